import os
import shutil
import logging


BASE_DIR = os.environ.get("FABWORLD_BASE_DIR", os.path.join(os.getcwd(), "tmp"))

# Directory holding prebuilt cryptogen, configtxgen, orderer and peer binaries
FABRIC_BIN_DIR = os.environ.get("FABWORLD_BIN_DIR", os.path.join(os.getcwd(), "fabric", "bin"))

# Please use versions that match the orderer binary under test
ZOOKEEPER_IMAGE = os.environ.get("FABWORLD_ZOOKEEPER_IMAGE", "hyperledger/fabric-zookeeper:latest")
KAFKA_IMAGE = os.environ.get("FABWORLD_KAFKA_IMAGE", "hyperledger/fabric-kafka:latest")

# Docker network shared by the zookeeper and kafka containers
DOCKER_NETWORK = os.environ.get("FABWORLD_NETWORK", "fabworld_network")

# Seconds a container or node process is given to become ready
DEFAULT_START_TIMEOUT = float(os.environ.get("FABWORLD_START_TIMEOUT", "30"))

# Seconds to wait for a signalled process to exit during teardown
DEFAULT_STOP_TIMEOUT = 10.0

# Setup logging
logging.basicConfig(level=os.environ.get("FABWORLD_LOG_LEVEL", "INFO").upper())
log = logging.getLogger("fabworld")


class LogWriter:
    """ File-like sink that forwards every complete line to the logger.

    Used as the default output sink for processes and containers, so that
    node output ends up in the test log with the node name as prefix.
    """

    def __init__(self, prefix, level=logging.DEBUG):
        self.prefix = prefix
        self.level = level
        self._partial = ""

    def write(self, data):
        if isinstance(data, bytes):
            data = data.decode("utf-8", errors="replace")
        data = self._partial + data
        lines = data.split("\n")
        self._partial = lines.pop()
        for line in lines:
            log.log(self.level, "[%s] %s", self.prefix, line.rstrip("\r"))
        return len(data)

    def flush(self):
        if self._partial:
            log.log(self.level, "[%s] %s", self.prefix, self._partial)
            self._partial = ""


def cleanup(base_dir=BASE_DIR):
    """ Remove the base directory. """
    if os.path.exists(base_dir):
        shutil.rmtree(base_dir)
        log.info("Removed directory: {}".format(base_dir))
    else:
        log.debug("Directory does not exist: {}".format(base_dir))
