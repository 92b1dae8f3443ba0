import os
from typing import NamedTuple, Optional

from fabworld.config import log
from fabworld.errors import InvocationError
from fabworld.process import ManagedProcess, ProcessSpec
from fabworld.supervisor import execute


class InvocationResult(NamedTuple):
    returncode: Optional[int]
    stdout: str
    stderr: str


class Cryptogen:
    def __init__(self, path, config=None, output=None, stdout=None, stderr=None):
        self.path = path
        self.config = config
        self.output = output
        self.stdout = stdout
        self.stderr = stderr

    def generate(self, *extra_args) -> ManagedProcess:
        spec = ProcessSpec(
            path=self.path,
            args=("generate", "--config", self.config, "--output", self.output) + extra_args,
            name="cryptogen",
        )
        return ManagedProcess(spec, stdout=self.stdout, stderr=self.stderr)


class ConfigTxGen:
    """ configtxgen invocations. ``config_dir`` is the folder holding configtx.yaml. """

    def __init__(self, path, channel_id=None, profile=None, as_org=None, config_dir=None, output=None,
                 stdout=None, stderr=None):
        self.path = path
        self.channel_id = channel_id
        self.profile = profile
        self.as_org = as_org
        self.config_dir = config_dir
        self.output = output
        self.stdout = stdout
        self.stderr = stderr

    def _process(self, args) -> ManagedProcess:
        env = ()
        if self.config_dir:
            env = (("FABRIC_CFG_PATH", os.path.abspath(self.config_dir)),)
        spec = ProcessSpec(path=self.path, args=tuple(args), env=env, name="configtxgen")
        return ManagedProcess(spec, stdout=self.stdout, stderr=self.stderr)

    def output_block(self, *extra_args):
        return self._process(("-outputBlock", self.output, "-profile", self.profile,
                              "-channelID", self.channel_id) + extra_args)

    def output_create_channel_tx(self, *extra_args):
        return self._process(("-channelID", self.channel_id, "-outputCreateChannelTx", self.output,
                              "-profile", self.profile) + extra_args)

    def output_anchor_peers_update(self, *extra_args):
        return self._process(("-channelID", self.channel_id, "-outputAnchorPeersUpdate", self.output,
                              "-profile", self.profile, "-asOrg", self.as_org) + extra_args)


class ArtifactBuilder:
    """ Produces crypto material and channel artifacts with cryptogen and configtxgen.

    Crypto material has to exist before any configtx artifact is generated,
    since configtxgen reads the organization MSP folders. Output locations are
    expected to be fresh.
    """

    def __init__(self, components, stdout=None, stderr=None):
        self.components = components
        self.stdout = stdout
        self.stderr = stderr

    def _run(self, process: ManagedProcess) -> InvocationResult:
        err = execute(process)
        result = InvocationResult(process.returncode, process.out.contents(), process.err.contents())
        if err is not None:
            log.error("%s failed: %s\n%s", process.name, err, result.stderr)
            raise InvocationError(f"{process.name} failed: {err}", result) from err
        return result

    def generate_crypto(self, config_path, output_dir) -> InvocationResult:
        log.info("ArtifactBuilder: Generating crypto material into %s", output_dir)
        cryptogen = self.components.cryptogen(stdout=self.stdout, stderr=self.stderr)
        cryptogen.config = config_path
        cryptogen.output = output_dir
        return self._run(cryptogen.generate())

    def _configtxgen(self, channel_id, profile, config_dir, output_path, as_org=None) -> ConfigTxGen:
        gen = self.components.configtxgen(stdout=self.stdout, stderr=self.stderr)
        gen.channel_id = channel_id
        gen.profile = profile
        gen.config_dir = config_dir
        gen.output = output_path
        gen.as_org = as_org
        return gen

    def generate_genesis_block(self, channel_id, profile, config_dir, output_path) -> InvocationResult:
        log.info("ArtifactBuilder: Generating genesis block for channel %s with profile %s", channel_id, profile)
        gen = self._configtxgen(channel_id, profile, config_dir, output_path)
        return self._run(gen.output_block())

    def generate_channel_tx(self, channel_id, profile, config_dir, output_path) -> InvocationResult:
        log.info("ArtifactBuilder: Generating channel creation tx for channel %s", channel_id)
        gen = self._configtxgen(channel_id, profile, config_dir, output_path)
        return self._run(gen.output_create_channel_tx())

    def generate_anchor_update_tx(self, channel_id, profile, config_dir, as_org, output_path) -> InvocationResult:
        log.info("ArtifactBuilder: Generating anchor peers update for %s on channel %s", as_org, channel_id)
        gen = self._configtxgen(channel_id, profile, config_dir, output_path, as_org=as_org)
        return self._run(gen.output_anchor_peers_update())
