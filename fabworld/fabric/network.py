import os
import shutil
import signal
import time
from typing import Dict, List

import docker

from fabworld.config import (DEFAULT_START_TIMEOUT, DEFAULT_STOP_TIMEOUT,
                             DOCKER_NETWORK, LogWriter, log)
from fabworld.container import (ContainerRunner, ensure_network, remove_containers_by_name,
                                remove_labelled_images, remove_network, split_address)
from fabworld.errors import AlreadyStoppedError
from fabworld.fabric.artifacts import ArtifactBuilder
from fabworld.fabric.nodes import ORDERER_KAFKA_STARTED_MARKER, Peer
from fabworld.fabric.tools import (generate_configtx_yaml, generate_crypto_yaml,
                                   kafka_broker_addresses)
from fabworld.fabric.topology import Deployment, OrdererOrg, PeerOrg
from fabworld.supervisor import RunHandle, invoke

# Seconds the orderer is given to finish its kafka start phase
KAFKA_START_PHASE_TIMEOUT = 30

# Convention used for the files of a world, all relative to rootpath:
# - crypto.yaml and configtx.yaml are the inputs of cryptogen and configtxgen
# - crypto/ holds the material produced by cryptogen
# - <system_channel>.block, <channel>.tx and <org>_anchors.tx are the configtxgen outputs
# - <domain>_<i>/ is the FABRIC_CFG_PATH of peer i of the org with that domain
# - ledger/ is the orderer ledger


class FabricWorld:
    """ A Fabric test network: artifacts, zookeeper/kafka containers, orderer and peer processes.

    Everything started is tracked in ``local_stoppers`` (containers) and
    ``local_processes`` (process handles) before any readiness wait, so that
    ``teardown()`` releases it even when a later step fails.
    """

    def __init__(self,
                 rootpath,
                 components,
                 orderer_orgs: List[OrdererOrg],
                 peer_orgs: List[PeerOrg],
                 profiles: Dict,
                 deployment: Deployment,
                 orderer_profile_name: str,
                 channel_profile_name: str,
                 network: str = None,
                 docker_client: docker.DockerClient = None,
                 settle_delay: float = 0,
                 start_timeout: float = DEFAULT_START_TIMEOUT,
                 stop_timeout: float = DEFAULT_STOP_TIMEOUT,
                 node_log_level: str = "debug",
                 ):
        """
        :param rootpath: Working directory of the world, expected to be fresh
        :param components: Components giving the binaries to run
        :param profiles: configtxgen profiles, see tools.build_profiles()
        :param network: Docker network for zookeeper and kafka containers
        :param settle_delay: Seconds to wait between zookeeper readiness and kafka start
        :param start_timeout: Seconds each node is given to become ready
        :param stop_timeout: Seconds each process is given to exit at teardown
        """
        self.rootpath = rootpath
        self.components = components
        self.orderer_orgs = list(orderer_orgs)
        self.peer_orgs = list(peer_orgs)
        self.profiles = profiles
        self.deployment = deployment
        self.orderer_profile_name = orderer_profile_name
        self.channel_profile_name = channel_profile_name
        self.network_name = network or DOCKER_NETWORK
        self.settle_delay = settle_delay
        self.start_timeout = start_timeout
        self.stop_timeout = stop_timeout
        self.node_log_level = node_log_level

        self.builder = ArtifactBuilder(components)
        self.local_stoppers: List[ContainerRunner] = []
        self.local_processes: List[RunHandle] = []
        self.kafka_brokers: List[str] = []

        self._docker = docker_client
        self._network = None
        self._owns_network = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.teardown()
        return False

    @property
    def docker_client(self):
        if self._docker is None:
            self._docker = docker.from_env()
        return self._docker

    # Paths

    def crypto_config_path(self):
        return os.path.join(self.rootpath, "crypto.yaml")

    def crypto_dir(self):
        return os.path.join(self.rootpath, "crypto")

    def system_block_path(self):
        return os.path.join(self.rootpath, f"{self.deployment.system_channel}.block")

    def channel_tx_path(self):
        return os.path.join(self.rootpath, f"{self.deployment.channel}.tx")

    def anchors_tx_path(self, org: PeerOrg):
        return os.path.join(self.rootpath, f"{org.name}_anchors.tx")

    # Bootstrap

    def construct(self):
        """ Write crypto.yaml and configtx.yaml into the root path """
        os.makedirs(self.rootpath, exist_ok=True)
        generate_crypto_yaml(self.orderer_orgs, self.peer_orgs, self.crypto_config_path())
        generate_configtx_yaml(self.profiles, self.rootpath)

    def bootstrap(self):
        """ Generate every artifact the network needs. The first failing step raises and stops the sequence. """
        log.info("FabricWorld: Writing crypto and configtx configuration into %s", self.rootpath)
        self.construct()

        log.info("FabricWorld: Generating crypto material...")
        self.builder.generate_crypto(self.crypto_config_path(), self.crypto_dir())

        log.info("FabricWorld: Generating genesis block for system channel %s...", self.deployment.system_channel)
        self.builder.generate_genesis_block(self.deployment.system_channel, self.orderer_profile_name,
                                            self.rootpath, self.system_block_path())

        log.info("FabricWorld: Generating channel transaction for %s...", self.deployment.channel)
        self.builder.generate_channel_tx(self.deployment.channel, self.channel_profile_name,
                                         self.rootpath, self.channel_tx_path())

        for org in self.peer_orgs:
            log.info("FabricWorld: Generating anchor peers update for %s...", org.name)
            self.builder.generate_anchor_update_tx(self.deployment.channel, self.channel_profile_name,
                                                   self.rootpath, org.name, self.anchors_tx_path(org))

    def copy_node_configs(self, source_dir):
        """ Copy orderer.yaml and the peers core.yaml files from ``source_dir``.

        Each peer gets ``<domain>_<i>-core.yaml`` when present, ``core.yaml`` otherwise.
        """
        shutil.copy(os.path.join(source_dir, "orderer.yaml"), os.path.join(self.rootpath, "orderer.yaml"))
        for org in self.peer_orgs:
            for i in range(org.peer_count):
                config_dir = org.config_dir(self.rootpath, i)
                os.makedirs(config_dir, exist_ok=True)
                source = os.path.join(source_dir, f"{org.domain}_{i}-core.yaml")
                if not os.path.exists(source):
                    source = os.path.join(source_dir, "core.yaml")
                shutil.copy(source, os.path.join(config_dir, "core.yaml"))

    # Network

    def ensure_network(self):
        if self._network is None:
            self._network, self._owns_network = ensure_network(self.docker_client, self.network_name)
        return self._network

    def build_network(self):
        self.orderer_network()
        self.peer_network()

    def _track(self, process) -> RunHandle:
        handle = invoke(process)
        self.local_processes.append(handle)
        return handle

    def _start_kafka_cluster(self, org: OrdererOrg) -> List[str]:
        """ Start the zookeeper ensemble then the brokers of ``org``, returns the broker host addresses """
        self.ensure_network()

        zoo_servers = [f"server.{i}=zookeeper{i}:2888:3888" for i in range(1, org.zookeeper_count + 1)]
        zoo_connect = [f"zookeeper{i}:2181" for i in range(1, org.zookeeper_count + 1)]

        zookeepers = []
        for zoo_id in range(1, org.zookeeper_count + 1):
            z = self.components.zookeeper(
                zoo_id, self.network_name,
                client=self.docker_client,
                servers=zoo_servers,
                start_timeout=self.start_timeout,
                output_stream=LogWriter(f"zookeeper{zoo_id}"),
            )
            self.local_stoppers.append(z)
            zookeepers.append(z)
        for z in zookeepers:
            log.info("FabricWorld: Starting %s...", z.name)
            z.start()

        if self.settle_delay:
            time.sleep(self.settle_delay)

        profile_brokers = kafka_broker_addresses(self.profiles, self.orderer_profile_name)
        brokers = []
        for broker_id in range(1, org.broker_count + 1):
            host_port = None
            advertised = None
            if broker_id <= len(profile_brokers):
                host_port = split_address(profile_brokers[broker_id - 1])[1]
                advertised = f"PLAINTEXT://{profile_brokers[broker_id - 1]}"
            k = self.components.kafka(
                broker_id, self.network_name,
                client=self.docker_client,
                host_port=host_port,
                advertised_listeners=advertised,
                zookeeper_connect=",".join(zoo_connect),
                min_insync_replicas=org.kafka_min_insync_replicas,
                default_replication_factor=org.kafka_default_replication_factor,
                start_timeout=self.start_timeout,
                output_stream=LogWriter(f"kafka{broker_id}"),
            )
            self.local_stoppers.append(k)
            log.info("FabricWorld: Starting %s...", k.name)
            k.start()
            brokers.append(k.host_address)
        return brokers

    def orderer_network(self):
        for org in self.orderer_orgs:
            orderer_name = f"{org.orderer_names[0]}.{org.domain}"
            orderer = self.components.orderer(stdout=LogWriter(orderer_name), stderr=LogWriter(orderer_name))
            orderer.config_dir = self.rootpath
            orderer.ledger_location = os.path.join(self.rootpath, "ledger")
            orderer.log_level = self.node_log_level
            orderer.genesis_method = "file"
            orderer.genesis_file = self.system_block_path()
            orderer.genesis_profile = self.orderer_profile_name
            orderer.local_msp_id = org.local_msp_id()
            orderer.local_msp_dir = org.orderer_msp_dir(self.rootpath, org.orderer_names[0])

            if org.broker_count:
                brokers = self._start_kafka_cluster(org)
                self.kafka_brokers.extend(brokers)
                orderer.orderer_type = "kafka"
                orderer.kafka_brokers = brokers
            else:
                orderer.orderer_type = "solo"

            log.info("FabricWorld: Starting orderer %s...", orderer_name)
            process = orderer.new(name=orderer_name)
            handle = self._track(process)
            handle.wait_ready(self.start_timeout)
            if org.broker_count:
                process.err.say(ORDERER_KAFKA_STARTED_MARKER, KAFKA_START_PHASE_TIMEOUT)

    def peer_network(self):
        for org in self.peer_orgs:
            for i in range(org.peer_count):
                peer_name = f"peer{i}.{org.domain}"
                peer = self.components.peer(stdout=LogWriter(peer_name), stderr=LogWriter(peer_name))
                peer.config_dir = org.config_dir(self.rootpath, i)
                log.info("FabricWorld: Starting peer %s...", peer_name)
                handle = self._track(peer.node_start(name=peer_name))
                handle.wait_ready(self.start_timeout)

    def peer_cli(self, org: PeerOrg, index: int = 0) -> Peer:
        """ Returns a peer CLI acting as the org admin against peer ``index`` """
        name = f"peer{index}.{org.domain}"
        peer = self.components.peer(stdout=LogWriter(name), stderr=LogWriter(name))
        peer.config_dir = org.config_dir(self.rootpath, index)
        peer.local_msp_id = org.local_msp_id()
        peer.msp_config_path = org.admin_msp_dir(self.rootpath)
        peer.log_level = self.node_log_level
        return peer

    # Teardown

    def teardown(self):
        """ Release everything this world started. Never raises, failures are logged. """
        log.info("FabricWorld: Tearing down...")
        for handle in reversed(self.local_processes):
            handle.signal(signal.SIGTERM)
        for handle in reversed(self.local_processes):
            try:
                handle.wait(self.stop_timeout)
            except TimeoutError:
                log.warning("FabricWorld: %s ignored SIGTERM, killing it", handle.name)
                handle.signal(signal.SIGKILL)
                try:
                    handle.wait(self.stop_timeout)
                except TimeoutError:
                    log.warning("FabricWorld: %s still running after SIGKILL", handle.name)
        self.local_processes = []

        for stopper in reversed(self.local_stoppers):
            try:
                stopper.stop()
            except AlreadyStoppedError:
                pass
            except Exception as e:
                log.warning("FabricWorld: Could not stop container %s: %s", stopper.name, e)
        self.local_stoppers = []

        chaincode = self.deployment.chaincode
        names = [chaincode.container_name(self.network_name, peer_name) for peer_name in self.deployed_peers()]
        self._docker_cleanup("chaincode containers", remove_containers_by_name, names)
        self._docker_cleanup("chaincode images", remove_labelled_images, chaincode.image_label())
        if self._owns_network:
            self._docker_cleanup("network", remove_network, self.network_name)
            self._owns_network = False
        self._network = None

    def _docker_cleanup(self, what, f, *args):
        try:
            f(self.docker_client, *args)
        except docker.errors.DockerException as e:
            log.warning("FabricWorld: Could not remove %s: %s", what, e)

    def deployed_peers(self) -> List[str]:
        """ Names of the peers the chaincode is deployed on, every peer when the deployment lists none """
        names = [name for org in self.peer_orgs for name in org.peer_names()]
        if self.deployment.peers:
            names = [name for name in names if name in self.deployment.peers]
        return names
