import base64
import queue
import socket
import threading
import uuid
from enum import Enum, auto
from typing import Dict, Iterable, List, Optional, Tuple

import docker

from fabworld.config import (DEFAULT_START_TIMEOUT, KAFKA_IMAGE, ZOOKEEPER_IMAGE,
                             log)
from fabworld.errors import (AlreadyStoppedError, ContainerExitError,
                             PrematureExitError, StartupError, StartupTimeoutError)
from fabworld.supervisor import invoke

# Label put on every container started by a ContainerRunner
CONTAINER_LABEL = "fabworld"

# TCP readiness probe timings, in seconds
PROBE_DIAL_TIMEOUT = 0.05
PROBE_INTERVAL = 0.1


def unique_name() -> str:
    """ Returns a random name usable as a container name (26 chars, base32 of a UUID). """
    return base64.b32encode(uuid.uuid4().bytes).decode("ascii").rstrip("=")


def split_address(address: str) -> Tuple[str, int]:
    host, _, port = address.rpartition(":")
    return host, int(port)


def wait_for_port(address: str, cancel: threading.Event, interval: float = PROBE_INTERVAL) -> bool:
    """ Try to connect to ``address`` until it accepts a connection or ``cancel`` is set.

    This only proves that something listens on the socket, it says nothing about
    the protocol spoken behind it.

    :return: True once a connection succeeded, False if cancelled first
    """
    host, port = split_address(address)
    while not cancel.is_set():
        try:
            with socket.create_connection((host, port), timeout=PROBE_DIAL_TIMEOUT):
                return True
        except OSError:
            pass
        cancel.wait(interval)
    return False


class ContainerState(Enum):
    CREATED = auto()
    STARTED = auto()
    READY = auto()
    RUNNING = auto()
    STOPPING = auto()
    STOPPED = auto()
    REMOVED = auto()
    FAILED = auto()


class ContainerRunner:
    """ Runs one docker container with a TCP readiness probe.

    Follows the supervisor run contract: ``run(signals, ready)`` blocks for the
    whole container lifetime, sets ``ready`` once its port accepts connections
    and stops the container when a signal arrives. Subclasses provide the image,
    the exposed port and the environment.
    """

    default_image: Optional[str] = None
    default_container_port: Optional[str] = None

    def __init__(self,
                 name: str = None,
                 image: str = None,
                 client: docker.DockerClient = None,
                 host_ip: str = "127.0.0.1",
                 host_port: int = None,
                 container_port: str = None,
                 network_name: str = None,
                 environment: Dict[str, str] = None,
                 start_timeout: float = None,
                 output_stream=None,
                 error_stream=None,
                 ):
        """
        :param name: Container name, a unique one is generated when omitted
        :type name: str
        :param image: Image to run, defaults to the class image
        :type image: str
        :param client: Docker client, defaults to docker.from_env()
        :param host_ip: Host interface the container port is published on
        :type host_ip: str
        :param host_port: Host port, None lets the engine pick one
        :type host_port: int
        :param container_port: Exposed port inside the container. Example: "2181/tcp"
        :type container_port: str
        :param network_name: Docker network the container joins at creation
        :type network_name: str
        :param environment: Extra environment variables, merged over the class ones
        :type environment: dict
        :param start_timeout: Seconds the container is given to open its port
        :type start_timeout: float
        :param output_stream: Sink for the container stdout
        :param error_stream: Sink for the container stderr
        """
        self.name = name
        self.image = image
        self.client = client
        self.host_ip = host_ip
        self.host_port = host_port
        self.container_port = container_port
        self.network_name = network_name
        self.extra_environment = environment or {}
        self.start_timeout = start_timeout
        self.output_stream = output_stream
        self.error_stream = error_stream

        self.container_id = None
        self.host_address = None
        self.container_address = None
        self.address = None
        self.state = None

        self._container = None
        self._lock = threading.Lock()
        self._stopped = False

    def environment(self) -> Dict[str, str]:
        return dict(self.extra_environment)

    def _set_state(self, state: ContainerState):
        if self.state is ContainerState.FAILED:
            return
        log.debug("Container %s: %s", self.name, state.name)
        self.state = state

    def _resolve_defaults(self):
        if self.image is None:
            self.image = self.default_image
        if self.name is None:
            self.name = unique_name()
        if self.container_port is None:
            self.container_port = self.default_container_port
        if self.start_timeout is None:
            self.start_timeout = DEFAULT_START_TIMEOUT
        if self.client is None:
            self.client = docker.from_env()

    def _create(self):
        settings = {
            "image": self.image,
            "name": self.name,
            "environment": self.environment(),
            "ports": {self.container_port: (self.host_ip, self.host_port)},
            "labels": {CONTAINER_LABEL: "true"},
            "detach": True,
        }
        if self.network_name is not None:
            settings["network"] = self.network_name

        log.debug("Creating container with settings: {}".format(settings))
        self._container = self.client.containers.create(**settings)
        self.container_id = self._container.id
        self._set_state(ContainerState.CREATED)

    def _resolve_addresses(self):
        self._container.reload()
        net = self._container.attrs["NetworkSettings"]
        # Bindings are gone from the inspect data once the container has exited
        bindings = (net.get("Ports") or {}).get(self.container_port)
        if not bindings:
            if self._container.status in ("exited", "dead"):
                raise PrematureExitError(f"container {self.name} exited before ready")
            raise StartupError(f"container {self.name} does not publish {self.container_port}")
        binding = bindings[0]
        host_ip = binding["HostIp"]
        if host_ip in ("", "0.0.0.0"):
            host_ip = self.host_ip
        self.host_address = f"{host_ip}:{binding['HostPort']}"

        if self.network_name is not None:
            container_ip = (net.get("Networks") or {}).get(self.network_name, {}).get("IPAddress")
        else:
            container_ip = net.get("IPAddress")
        if container_ip:
            self.container_address = f"{container_ip}:{self.container_port.split('/')[0]}"

    def _stream_logs(self) -> List:
        """ Follow the container logs into the configured sinks, returns the open streams. """
        streams = []
        for sink, stdout, stderr in ((self.output_stream, True, False), (self.error_stream, False, True)):
            if sink is None:
                continue
            stream = self._container.logs(stdout=stdout, stderr=stderr, stream=True, follow=True)
            streams.append(stream)
            threading.Thread(target=self._copy_logs, args=(stream, sink), daemon=True).start()
        return streams

    def _copy_logs(self, stream, sink):
        try:
            for chunk in stream:
                sink.write(chunk)
        except Exception as e:
            log.debug("Container %s: log stream ended: %s", self.name, e)
        finally:
            if hasattr(sink, "flush"):
                sink.flush()

    def _watch_exit(self, events: queue.Queue):
        try:
            result = self._container.wait()
            events.put(("exit", result.get("StatusCode", 0)))
        except Exception as e:
            events.put(("exit", e))

    def _probe(self, address: str, cancel: threading.Event, events: queue.Queue):
        if wait_for_port(address, cancel):
            events.put(("ready", address))

    def run(self, signals: queue.Queue, ready: threading.Event):
        self._resolve_defaults()
        streams = []
        cancel = threading.Event()
        try:
            self._create()
            self._container.start()
            self._set_state(ContainerState.STARTED)
            self._resolve_addresses()
            streams = self._stream_logs()

            events = queue.Queue()
            threading.Thread(target=self._watch_exit, args=(events,), daemon=True).start()
            for address in (self.container_address, self.host_address):
                if address is not None:
                    threading.Thread(target=self._probe, args=(address, cancel, events), daemon=True).start()

            try:
                kind, value = events.get(timeout=self.start_timeout)
            except queue.Empty:
                raise StartupTimeoutError(
                    f"container {self.name} did not open {self.container_port} within {self.start_timeout}s"
                ) from TimeoutError(self.start_timeout)
            cancel.set()
            if kind == "exit":
                raise PrematureExitError(f"container {self.name} exited before ready")

            self.address = value
            self._set_state(ContainerState.READY)
            ready.set()
            self._set_state(ContainerState.RUNNING)
            log.info("Container %s ready at %s", self.name, self.address)

            while True:
                try:
                    signals.get(timeout=0.1)
                except queue.Empty:
                    pass
                else:
                    return self.stop()
                try:
                    kind, value = events.get_nowait()
                except queue.Empty:
                    continue
                if kind == "exit":
                    return self._exit_result(value)
        except Exception:
            self._set_state(ContainerState.FAILED)
            raise
        finally:
            cancel.set()
            for s in streams:
                s.close()
            self._stop_on_return()

    def _exit_result(self, value):
        # Exit caused by a direct stop() call
        if self._stopped:
            return None
        if isinstance(value, Exception):
            raise value
        if value != 0:
            raise ContainerExitError(self.name, value)

    def _stop_on_return(self):
        try:
            self.stop()
        except AlreadyStoppedError:
            pass
        except docker.errors.APIError as e:
            log.warning("Container %s: cleanup failed: %s", self.name, e)

    def start(self):
        """ Invoke the runner and block until the container is ready, raising if it never gets there. """
        handle = invoke(self)
        handle.wait_ready()
        return handle

    def stop(self):
        """ Stop the container with no grace period and force-remove it.

        A second call raises AlreadyStoppedError without touching the engine.
        """
        with self._lock:
            if self._stopped:
                raise AlreadyStoppedError(f"container {self.container_id or self.name} already stopped")
            self._stopped = True

        if self._container is None:
            return
        self._set_state(ContainerState.STOPPING)
        self._container.stop(timeout=0)
        self._set_state(ContainerState.STOPPED)
        self._container.remove(force=True)
        self._set_state(ContainerState.REMOVED)

    def remove(self):
        """ Force-remove the container, whatever state it is in. """
        container = self.client.containers.get(self.container_id or self.name)
        container.remove(force=True)
        self._set_state(ContainerState.REMOVED)


class Zookeeper(ContainerRunner):
    default_image = ZOOKEEPER_IMAGE
    default_container_port = "2181/tcp"

    def __init__(self, my_id: int = 1, servers: Iterable[str] = (), **kwargs):
        """
        :param my_id: Id of this node inside the ensemble (ZOO_MY_ID)
        :param servers: Ensemble members. Example: ["server.1=zookeeper1:2888:3888"]
        """
        super().__init__(**kwargs)
        self.my_id = my_id
        self.servers = list(servers)

    def environment(self):
        env = {"ZOO_MY_ID": str(self.my_id)}
        if self.servers:
            env["ZOO_SERVERS"] = " ".join(self.servers)
        env.update(self.extra_environment)
        return env


class Kafka(ContainerRunner):
    default_image = KAFKA_IMAGE
    default_container_port = "9092/tcp"

    def __init__(self,
                 broker_id: int = 0,
                 zookeeper_connect: str = "zookeeper:2181",
                 advertised_listeners: str = None,
                 default_replication_factor: int = 1,
                 min_insync_replicas: int = 1,
                 message_max_bytes: int = 1000012,
                 replica_fetch_max_bytes: int = 1048576,
                 replica_fetch_response_max_bytes: int = 10485760,
                 unclean_leader_election_enable: bool = False,
                 **kwargs):
        super().__init__(**kwargs)
        self.broker_id = broker_id
        self.zookeeper_connect = zookeeper_connect
        self.advertised_listeners = advertised_listeners
        self.default_replication_factor = default_replication_factor
        self.min_insync_replicas = min_insync_replicas
        self.message_max_bytes = message_max_bytes
        self.replica_fetch_max_bytes = replica_fetch_max_bytes
        self.replica_fetch_response_max_bytes = replica_fetch_response_max_bytes
        self.unclean_leader_election_enable = unclean_leader_election_enable

    def environment(self):
        env = {
            "KAFKA_LOG_RETENTION_MS": "-1",
            "KAFKA_MESSAGE_MAX_BYTES": str(self.message_max_bytes),
            "KAFKA_REPLICA_FETCH_MAX_BYTES": str(self.replica_fetch_max_bytes),
            "KAFKA_UNCLEAN_LEADER_ELECTION_ENABLE": str(self.unclean_leader_election_enable).lower(),
            "KAFKA_DEFAULT_REPLICATION_FACTOR": str(self.default_replication_factor),
            "KAFKA_MIN_INSYNC_REPLICAS": str(self.min_insync_replicas),
            "KAFKA_BROKER_ID": str(self.broker_id),
            "KAFKA_ZOOKEEPER_CONNECT": self.zookeeper_connect,
            "KAFKA_REPLICA_FETCH_RESPONSE_MAX_BYTES": str(self.replica_fetch_response_max_bytes),
        }
        if self.advertised_listeners:
            env["KAFKA_ADVERTISED_LISTENERS"] = self.advertised_listeners
        env.update(self.extra_environment)
        return env


def ensure_network(client: docker.DockerClient, name: str):
    """ Get the docker network ``name``, creating a bridge network if it is missing.

    :return: (network, created) where created tells whether this call created it
    """
    try:
        return client.networks.get(name), False
    except docker.errors.NotFound:
        log.info("Creating network %s", name)
        return client.networks.create(name, driver="bridge"), True


def remove_network(client: docker.DockerClient, name: str):
    try:
        client.networks.get(name).remove()
    except docker.errors.NotFound:
        log.debug("Network %s does not exist", name)


def remove_containers_by_name(client: docker.DockerClient, names: Iterable[str]):
    """ Force-remove the named containers, skipping the ones that do not exist. """
    for name in names:
        try:
            client.containers.get(name).remove(force=True)
            log.info("Removed container %s", name)
        except docker.errors.NotFound:
            continue


def remove_labelled_containers(client: docker.DockerClient, label: str = CONTAINER_LABEL):
    for container in client.containers.list(all=True, filters={"label": label}):
        container.remove(force=True)
        log.info("Removed container %s", container.name)


def remove_labelled_images(client: docker.DockerClient, label: str):
    """ Remove every image carrying ``label``. Example: "org.hyperledger.fabric.chaincode.id.name=mycc" """
    for image in client.images.list(filters={"label": label}):
        client.images.remove(image.id, force=True)
        log.info("Removed image %s", image.id)
