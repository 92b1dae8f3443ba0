"""Orderer and peer binaries, configured through environment variables only.

The ORDERER_ENV and PEER_ENV tables map node attributes to the variables the
binaries read. Unset (None or empty) attributes are left out of the
environment, so the binary falls back to its orderer.yaml / core.yaml.
"""
from typing import Tuple

from fabworld.process import ManagedProcess, ProcessSpec

ORDERER_READY_MARKER = r"Beginning to serve requests"
ORDERER_KAFKA_STARTED_MARKER = r"Start phase completed successfully"
PEER_READY_MARKER = r"Started peer with ID"

ORDERER_ENV = (
    ("config_dir", "FABRIC_CFG_PATH"),
    ("ledger_location", "ORDERER_FILELEDGER_LOCATION"),
    ("genesis_profile", "ORDERER_GENERAL_GENESISPROFILE"),
    ("genesis_method", "ORDERER_GENERAL_GENESISMETHOD"),
    ("genesis_file", "ORDERER_GENERAL_GENESISFILE"),
    ("listen_address", "ORDERER_GENERAL_LISTENADDRESS"),
    ("listen_port", "ORDERER_GENERAL_LISTENPORT"),
    ("log_level", "ORDERER_GENERAL_LOGLEVEL"),
    ("local_msp_id", "ORDERER_GENERAL_LOCALMSPID"),
    ("local_msp_dir", "ORDERER_GENERAL_LOCALMSPDIR"),
    ("orderer_type", "CONFIGTX_ORDERER_ORDERERTYPE"),
    ("kafka_brokers", "CONFIGTX_ORDERER_KAFKA_BROKERS"),
)

PEER_ENV = (
    ("config_dir", "FABRIC_CFG_PATH"),
    ("local_msp_id", "CORE_PEER_LOCALMSPID"),
    ("msp_config_path", "CORE_PEER_MSPCONFIGPATH"),
    ("peer_id", "CORE_PEER_ID"),
    ("peer_address", "CORE_PEER_ADDRESS"),
    ("peer_listen_address", "CORE_PEER_LISTENADDRESS"),
    ("ledger_state_database", "CORE_LEDGER_STATE_STATEDATABASE"),
    ("profile_enabled", "CORE_PEER_PROFILE_ENABLED"),
    ("profile_listen_address", "CORE_PEER_PROFILE_LISTENADDRESS"),
    ("file_system_path", "CORE_PEER_FILESYSTEMPATH"),
    ("events_address", "CORE_PEER_EVENTS_ADDRESS"),
    ("chaincode_address", "CORE_PEER_CHAINCODEADDRESS"),
    ("chaincode_listen_address", "CORE_PEER_CHAINCODELISTENADDRESS"),
    ("gossip_endpoint", "CORE_PEER_GOSSIP_ENDPOINT"),
    ("gossip_external_endpoint", "CORE_PEER_GOSSIP_EXTERNALENDPOINT"),
    ("gossip_bootstrap", "CORE_PEER_GOSSIP_BOOTSTRAP"),
    ("gossip_org_leader", "CORE_PEER_GOSSIP_ORGLEADER"),
    ("gossip_use_leader_election", "CORE_PEER_GOSSIP_USELEADERELECTION"),
)


def _validate_env_table(table):
    attrs = [a for a, _ in table]
    names = [n for _, n in table]
    if len(set(attrs)) != len(attrs) or len(set(names)) != len(names):
        raise ValueError(f"Duplicate entries in environment table: {table}")
    for attr in attrs:
        if not attr.isidentifier():
            raise ValueError(f"Invalid attribute name in environment table: {attr}")


_validate_env_table(ORDERER_ENV)
_validate_env_table(PEER_ENV)


def _env_value(value):
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(str(v) for v in value) + "]"
    if isinstance(value, bool):
        return str(value).lower()
    return str(value)


class Node:
    env_table: Tuple[Tuple[str, str], ...] = ()

    def __init__(self, path, stdout=None, stderr=None, **attrs):
        self.path = path
        self.stdout = stdout
        self.stderr = stderr
        for attr, _ in self.env_table:
            setattr(self, attr, None)
        for key, value in attrs.items():
            self.set(key, value)

    def set(self, key, value):
        if key not in dict(self.env_table) and key not in self.extra_attrs():
            raise ValueError(f"{type(self).__name__} has no setting named {key}")
        setattr(self, key, value)
        return self

    def extra_attrs(self):
        return ()

    def environment(self) -> Tuple[Tuple[str, str], ...]:
        pairs = []
        for attr, var in self.env_table:
            value = getattr(self, attr)
            if value is None or value == "":
                continue
            pairs.append((var, _env_value(value)))
        return tuple(pairs)

    def _process(self, args, name, ready_marker=None, extra_env=()) -> ManagedProcess:
        spec = ProcessSpec(
            path=self.path,
            args=tuple(args),
            env=self.environment() + tuple(extra_env),
            name=name,
            ready_marker=ready_marker,
        )
        return ManagedProcess(spec, stdout=self.stdout, stderr=self.stderr)


class Orderer(Node):
    env_table = ORDERER_ENV

    def new(self, name="orderer") -> ManagedProcess:
        """ Returns the orderer process, ready once it serves requests """
        return self._process((), name, ready_marker=ORDERER_READY_MARKER)


class Peer(Node):
    """ Peer binary, both as a node (``node_start``) and as the admin CLI. """

    env_table = PEER_ENV

    def extra_attrs(self):
        return ("log_level", "gopath", "exec_path")

    def __init__(self, path, stdout=None, stderr=None, **attrs):
        self.log_level = None
        self.gopath = None
        self.exec_path = None
        super().__init__(path, stdout=stdout, stderr=stderr, **attrs)

    def _cli(self, *args, extra_env=()):
        args = list(args)
        if self.log_level:
            args += ["--logging-level", self.log_level]
        return self._process(args, f"peer {args[0]} {args[1]}", extra_env=extra_env)

    def node_start(self, name=None) -> ManagedProcess:
        return self._process(("node", "start"), name or self.peer_id or "peer", ready_marker=PEER_READY_MARKER)

    def create_channel(self, channel, tx_file, orderer):
        return self._cli("channel", "create", "-c", channel, "-o", orderer, "-f", tx_file)

    def fetch_channel(self, channel, output, block, orderer):
        return self._cli("channel", "fetch", block, output, "-o", orderer, "-c", channel)

    def join_channel(self, block_path):
        return self._cli("channel", "join", "-b", block_path)

    def update_channel(self, orderer, channel, tx_file):
        return self._cli("channel", "update", "-o", orderer, "-c", channel, "-f", tx_file)

    def install_chaincode(self, name, version, path):
        extra_env = []
        if self.gopath:
            extra_env.append(("GOPATH", self.gopath))
        if self.exec_path:
            extra_env.append(("PATH", self.exec_path))
        return self._cli("chaincode", "install", "-n", name, "-v", version, "-p", path, extra_env=extra_env)

    def instantiate_chaincode(self, name, version, orderer, channel, args, policy):
        return self._cli("chaincode", "instantiate", "-n", name, "-v", version, "-o", orderer,
                         "-C", channel, "-c", args, "-P", policy)

    def query_chaincode(self, name, channel, args):
        return self._cli("chaincode", "query", "-n", name, "-C", channel, "-c", args)

    def invoke_chaincode(self, name, channel, orderer, args):
        return self._cli("chaincode", "invoke", "-o", orderer, "-n", name, "-C", channel, "-c", args)

    def chaincode_list_installed(self):
        return self._cli("chaincode", "list", "--installed")

    def chaincode_list_instantiated(self, channel):
        return self._cli("chaincode", "list", "--instantiated", "-C", channel)
