import os
import shutil
import tempfile
from typing import Dict

from fabworld.config import FABRIC_BIN_DIR, log
from fabworld.container import Kafka, Zookeeper
from fabworld.errors import InvocationError
from fabworld.fabric.artifacts import ConfigTxGen, Cryptogen
from fabworld.fabric.nodes import Orderer, Peer
from fabworld.process import ManagedProcess, ProcessSpec
from fabworld.supervisor import execute

COMPONENT_NAMES = ("configtxgen", "cryptogen", "orderer", "peer")

# Go packages of the binaries, built with `go build` when no prebuilt ones are used
GO_PACKAGES = {
    "configtxgen": "github.com/hyperledger/fabric/common/tools/configtxgen",
    "cryptogen": "github.com/hyperledger/fabric/common/tools/cryptogen",
    "orderer": "github.com/hyperledger/fabric/orderer",
    "peer": "github.com/hyperledger/fabric/peer",
}


class Components:
    """ Paths of the Fabric binaries, resolved once and shared by every world.

    Also the factory for every runner the worlds start, so that all of them
    point at the same binaries.
    """

    def __init__(self, paths: Dict[str, str] = None):
        self.paths = dict(paths or {})
        self.build_dir = None

    @classmethod
    def from_bin_dir(cls, bin_dir=FABRIC_BIN_DIR):
        """ Use prebuilt binaries from ``bin_dir``. Raises FileNotFoundError if one is missing. """
        paths = {}
        for name in COMPONENT_NAMES:
            path = os.path.join(bin_dir, name)
            if not os.access(path, os.X_OK):
                raise FileNotFoundError(f"{name} binary not found in {bin_dir}")
            paths[name] = path
        return cls(paths)

    def build(self, go="go", build_dir=None, stdout=None, stderr=None):
        """ Build every binary with ``go build`` into ``build_dir`` (a temporary folder by default). """
        if build_dir is None:
            build_dir = tempfile.mkdtemp(prefix="fabworld-bin-")
        os.makedirs(build_dir, exist_ok=True)
        self.build_dir = build_dir

        for name in COMPONENT_NAMES:
            output = os.path.join(build_dir, name)
            log.info("Components: Building %s", name)
            process = ManagedProcess(
                ProcessSpec(path=go, args=("build", "-o", output, GO_PACKAGES[name]), name=f"go build {name}",
                            env=tuple((k, os.environ[k]) for k in ("GOPATH", "GOCACHE", "GO111MODULE")
                                      if k in os.environ)),
                stdout=stdout, stderr=stderr,
            )
            err = execute(process)
            if err is not None:
                raise InvocationError(f"Could not build {name}: {err}\n{process.err.contents()}")
            self.paths[name] = output
        return self

    def cleanup(self):
        """ Remove the binaries built by ``build()`` """
        if self.build_dir is not None and os.path.exists(self.build_dir):
            shutil.rmtree(self.build_dir)
            log.info("Removed directory: {}".format(self.build_dir))
        self.build_dir = None

    def path(self, name) -> str:
        if name not in COMPONENT_NAMES:
            raise ValueError(f"Unknown component: {name}")
        try:
            return self.paths[name]
        except KeyError:
            raise ValueError(f"Component {name} has not been built") from None

    def cryptogen(self, **kwargs) -> Cryptogen:
        return Cryptogen(self.path("cryptogen"), **kwargs)

    def configtxgen(self, **kwargs) -> ConfigTxGen:
        return ConfigTxGen(self.path("configtxgen"), **kwargs)

    def orderer(self, **kwargs) -> Orderer:
        return Orderer(self.path("orderer"), **kwargs)

    def peer(self, **kwargs) -> Peer:
        return Peer(self.path("peer"), **kwargs)

    def zookeeper(self, zoo_id, network_name, **kwargs) -> Zookeeper:
        return Zookeeper(my_id=zoo_id, name=f"zookeeper{zoo_id}", network_name=network_name, **kwargs)

    def kafka(self, broker_id, network_name, **kwargs) -> Kafka:
        return Kafka(broker_id=broker_id, name=f"kafka{broker_id}", network_name=network_name, **kwargs)
