import os
from typing import List, NamedTuple, Optional, Tuple


class OrdererOrg(NamedTuple):
    """ An ordering organization. A broker_count of 0 means a solo orderer. """
    name: str
    domain: str
    profile: str
    orderer_names: Tuple[str, ...] = ("orderer0",)
    broker_count: int = 0
    zookeeper_count: int = 1
    kafka_min_insync_replicas: int = 1
    kafka_default_replication_factor: int = 1
    msp_id: Optional[str] = None

    def local_msp_id(self) -> str:
        return self.msp_id or self.name

    def msp_dir(self) -> str:
        """ Organization MSP folder, relative to the world root """
        return os.path.join("crypto", "ordererOrganizations", self.domain, "msp")

    def orderer_msp_dir(self, rootpath, orderer_name) -> str:
        return os.path.join(rootpath, "crypto", "ordererOrganizations", self.domain,
                            "orderers", f"{orderer_name}.{self.domain}", "msp")


class PeerOrg(NamedTuple):
    name: str
    domain: str
    profile: str
    peer_count: int = 1
    user_count: int = 1
    enable_node_ous: bool = False
    msp_id: Optional[str] = None
    anchor_port: int = 7051

    def local_msp_id(self) -> str:
        return self.msp_id or self.name

    def msp_dir(self) -> str:
        """ Organization MSP folder, relative to the world root """
        return os.path.join("crypto", "peerOrganizations", self.domain, "msp")

    def peer_names(self) -> List[str]:
        return [f"peer{i}.{self.domain}" for i in range(self.peer_count)]

    def config_dir(self, rootpath, index) -> str:
        """ FABRIC_CFG_PATH of the peer with the given index """
        return os.path.join(rootpath, f"{self.domain}_{index}")

    def admin_msp_dir(self, rootpath) -> str:
        return os.path.join(rootpath, "crypto", "peerOrganizations", self.domain,
                            "users", f"Admin@{self.domain}", "msp")


class Chaincode(NamedTuple):
    """ Chaincode to install. ``gopath`` and ``exec_path`` become GOPATH and PATH of the install command. """
    name: str
    version: str
    path: str
    gopath: Optional[str] = None
    exec_path: Optional[str] = None

    def container_name(self, network_name, peer_name) -> str:
        """ Name of the container the peer starts for this chaincode """
        return f"{network_name}-{peer_name}-{self.name}-{self.version}"

    def image_label(self) -> str:
        return f"org.hyperledger.fabric.chaincode.id.name={self.name}"


class Deployment(NamedTuple):
    channel: str
    system_channel: str
    chaincode: Chaincode
    init_args: str
    policy: str
    orderer: str = "127.0.0.1:7050"
    # Peers joined to the channel and given the chaincode, every peer when empty
    peers: Tuple[str, ...] = ()
