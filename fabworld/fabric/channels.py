import json
import os
import re
import time

from fabworld.config import log
from fabworld.errors import InvocationError, PollTimeoutError
from fabworld.fabric.topology import PeerOrg
from fabworld.process import ManagedProcess
from fabworld.supervisor import execute

FETCH_MARKER = "Received block: 0"
JOIN_MARKER = "Successfully submitted proposal to join channel"
INSTALL_MARKER = 'Installed remotely response:<status:200 payload:"OK" >'
INVOKE_MARKER = "Chaincode invoke successful"
UPDATE_MARKER = "Successfully submitted channel update"

# Instantiation completes asynchronously, it is polled for
INSTANTIATE_POLL_INTERVAL = 0.5
INSTANTIATE_POLL_TIMEOUT = 30


def chaincode_args(*args) -> str:
    """ Returns the -c argument of the peer CLI. Example: chaincode_args("query", "a") """
    return json.dumps({"Args": list(args)}, separators=(",", ":"))


class ChannelSetup:
    """ Creates the channel, joins the deployment peers and deploys the chaincode with the peer CLI.

    The admin peer is peer 0 of the first peer org. Every step checks the
    output of the CLI for its success marker and raises MarkerNotFoundError
    when it is missing.
    """

    def __init__(self, world):
        self.world = world
        self.deployment = world.deployment

    @property
    def admin_org(self) -> PeerOrg:
        return self.world.peer_orgs[0]

    def _peer(self, org: PeerOrg = None, index: int = 0):
        return self.world.peer_cli(org or self.admin_org, index)

    def _run(self, process: ManagedProcess, marker: str = None) -> ManagedProcess:
        err = execute(process)
        if err is not None:
            raise InvocationError(f"{process.name} failed: {err}\n{process.buffer.contents()}") from err
        if marker is not None:
            process.buffer.say(re.escape(marker))
        return process

    def setup_channel(self):
        dep = self.deployment
        cc = dep.chaincode

        log.info("ChannelSetup: Creating channel %s...", dep.channel)
        self._run(self._peer().create_channel(dep.channel, self.world.channel_tx_path(), dep.orderer))

        deployed = self.world.deployed_peers()
        for org in self.world.peer_orgs:
            for i in range(org.peer_count):
                if f"peer{i}.{org.domain}" not in deployed:
                    continue
                peer = self._peer(org, i)
                block = os.path.join(org.config_dir(self.world.rootpath, i), f"{dep.channel}.block")

                log.info("ChannelSetup: Joining peer%d.%s to channel %s...", i, org.domain, dep.channel)
                self._run(peer.fetch_channel(dep.channel, block, "0", dep.orderer), FETCH_MARKER)
                self._run(peer.join_channel(block), JOIN_MARKER)

                log.info("ChannelSetup: Installing chaincode %s on peer%d.%s...", cc.name, i, org.domain)
                peer.gopath = cc.gopath
                peer.exec_path = cc.exec_path
                self._run(peer.install_chaincode(cc.name, cc.version, cc.path), INSTALL_MARKER)

        log.info("ChannelSetup: Instantiating chaincode %s on channel %s...", cc.name, dep.channel)
        self._run(self._peer().instantiate_chaincode(
            cc.name, cc.version, dep.orderer, dep.channel, dep.init_args, dep.policy))
        self.wait_instantiated()

    def is_instantiated(self) -> bool:
        process = self._peer().chaincode_list_instantiated(self.deployment.channel)
        execute(process)
        return process.buffer.contains(re.escape(f"Path: {self.deployment.chaincode.path}"))

    def wait_instantiated(self, timeout=INSTANTIATE_POLL_TIMEOUT, interval=INSTANTIATE_POLL_INTERVAL):
        deadline = time.monotonic() + timeout
        while not self.is_instantiated():
            if time.monotonic() >= deadline:
                raise PollTimeoutError(
                    f"chaincode {self.deployment.chaincode.name} not instantiated on "
                    f"{self.deployment.channel} after {timeout}s")
            time.sleep(interval)
        log.info("ChannelSetup: Chaincode %s instantiated", self.deployment.chaincode.name)

    def query(self, args: str, org: PeerOrg = None, index: int = 0) -> str:
        """ Query the chaincode, returns the last line the CLI printed on stdout """
        dep = self.deployment
        process = self._run(self._peer(org, index).query_chaincode(dep.chaincode.name, dep.channel, args))
        lines = [line for line in process.out.contents().splitlines() if line.strip()]
        return lines[-1].strip() if lines else ""

    def invoke(self, args: str, org: PeerOrg = None, index: int = 0):
        dep = self.deployment
        self._run(self._peer(org, index).invoke_chaincode(dep.chaincode.name, dep.channel, dep.orderer, args),
                  INVOKE_MARKER)

    def update_anchor_peers(self, org: PeerOrg):
        dep = self.deployment
        log.info("ChannelSetup: Updating anchor peers of %s on channel %s...", org.name, dep.channel)
        self._run(self._peer(org).update_channel(dep.orderer, dep.channel, self.world.anchors_tx_path(org)),
                  UPDATE_MARKER)

    def list_installed(self, org: PeerOrg = None, index: int = 0) -> str:
        return self._run(self._peer(org, index).chaincode_list_installed()).buffer.contents()

    def list_instantiated(self, org: PeerOrg = None, index: int = 0) -> str:
        process = self._peer(org, index).chaincode_list_instantiated(self.deployment.channel)
        return self._run(process).buffer.contents()
