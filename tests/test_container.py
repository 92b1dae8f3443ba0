import socket
import threading
from unittest.mock import MagicMock

import docker
import pytest

from fabworld.container import (ContainerState, Kafka, Zookeeper, ensure_network,
                                remove_containers_by_name, remove_labelled_images,
                                unique_name, wait_for_port)
from fabworld.errors import (AlreadyStoppedError, PrematureExitError, StartupError,
                             StartupTimeoutError)
from fabworld.supervisor import invoke


@pytest.fixture
def listener():
    srv = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    srv.bind(("127.0.0.1", 0))
    srv.listen(5)
    yield srv.getsockname()[1]
    srv.close()


@pytest.fixture
def closed_port():
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return port


@pytest.fixture
def exited():
    event = threading.Event()
    yield event
    event.set()


def fake_client(host_port, exited, status_code=0):
    """ Docker client whose container publishes 2181/tcp on host_port and exits once ``exited`` is set """
    client = MagicMock()
    container = client.containers.create.return_value
    container.id = "c0ffee"
    container.attrs = {
        "NetworkSettings": {
            "IPAddress": "",
            "Networks": {},
            "Ports": {"2181/tcp": [{"HostIp": "127.0.0.1", "HostPort": str(host_port)}]},
        },
    }

    def wait(*args, **kwargs):
        exited.wait()
        return {"StatusCode": status_code}

    container.wait.side_effect = wait
    return client, container


def test_unique_name():
    names = {unique_name() for _ in range(100)}

    assert len(names) == 100
    for name in names:
        assert len(name) == 26
        assert name.isalnum()


def test_ready_then_stopped_by_signal(listener, exited):
    client, container = fake_client(listener, exited)
    zk = Zookeeper(client=client, name="zookeeper1", start_timeout=5)

    handle = zk.start()

    assert zk.address == f"127.0.0.1:{listener}"
    assert zk.host_address == zk.address
    assert zk.container_id == "c0ffee"
    assert zk.state is ContainerState.RUNNING

    handle.signal()
    assert handle.wait(5) is None
    container.stop.assert_called_once_with(timeout=0)
    container.remove.assert_called_once_with(force=True)
    assert zk.state is ContainerState.REMOVED


def test_stop_twice(listener, exited):
    client, container = fake_client(listener, exited)
    zk = Zookeeper(client=client, start_timeout=5)
    zk.start()

    zk.stop()
    with pytest.raises(AlreadyStoppedError, match="already stopped"):
        zk.stop()

    assert container.stop.call_count == 1
    assert container.remove.call_count == 1
    assert len(zk.name) == 26


def test_start_timeout_removes_container(closed_port, exited):
    client, container = fake_client(closed_port, exited)
    zk = Zookeeper(client=client, start_timeout=0.3)
    handle = invoke(zk)

    err = handle.wait(5)

    assert isinstance(err, StartupTimeoutError)
    assert isinstance(err.__cause__, TimeoutError)
    assert not handle.ready.is_set()
    assert zk.state is ContainerState.FAILED
    container.stop.assert_called_once_with(timeout=0)
    container.remove.assert_called_once_with(force=True)


def test_exit_before_ready(closed_port, exited):
    exited.set()
    client, container = fake_client(closed_port, exited, status_code=1)
    zk = Zookeeper(client=client, start_timeout=5)

    with pytest.raises(PrematureExitError, match="exited before ready"):
        zk.start()
    container.remove.assert_called_once_with(force=True)


def test_exit_right_after_start_drops_port_bindings(closed_port, exited):
    exited.set()
    client, container = fake_client(closed_port, exited, status_code=1)
    container.attrs["NetworkSettings"]["Ports"] = {}
    container.status = "exited"
    zk = Zookeeper(client=client, start_timeout=5)

    err = invoke(zk).wait(5)

    assert isinstance(err, PrematureExitError)
    assert zk.state is ContainerState.FAILED
    container.remove.assert_called_once_with(force=True)


def test_unpublished_port_is_a_startup_error(closed_port, exited):
    client, container = fake_client(closed_port, exited)
    container.attrs["NetworkSettings"]["Ports"] = {"2181/tcp": None}
    container.status = "running"
    zk = Zookeeper(client=client, start_timeout=5)

    err = invoke(zk).wait(5)

    assert type(err) is StartupError
    container.stop.assert_called_once_with(timeout=0)


def test_create_settings(listener, exited):
    client, _ = fake_client(listener, exited)
    zk = Zookeeper(client=client, name="zookeeper1", network_name="testnet", my_id=1,
                   servers=["server.1=zookeeper1:2888:3888", "server.2=zookeeper2:2888:3888"])
    zk.container_port = "2181/tcp"
    client.containers.create.return_value.attrs["NetworkSettings"]["Networks"] = {"testnet": {"IPAddress": ""}}

    zk.start()
    zk.stop()

    kwargs = client.containers.create.call_args.kwargs
    assert kwargs["image"] == "hyperledger/fabric-zookeeper:latest"
    assert kwargs["network"] == "testnet"
    assert kwargs["ports"] == {"2181/tcp": ("127.0.0.1", None)}
    assert kwargs["environment"] == {
        "ZOO_MY_ID": "1",
        "ZOO_SERVERS": "server.1=zookeeper1:2888:3888 server.2=zookeeper2:2888:3888",
    }


def test_kafka_environment():
    k = Kafka(broker_id=2, zookeeper_connect="zookeeper1:2181,zookeeper2:2181",
              environment={"KAFKA_LOG_RETENTION_MS": "1000"})

    env = k.environment()

    assert env["KAFKA_BROKER_ID"] == "2"
    assert env["KAFKA_ZOOKEEPER_CONNECT"] == "zookeeper1:2181,zookeeper2:2181"
    assert env["KAFKA_MESSAGE_MAX_BYTES"] == "1000012"
    assert env["KAFKA_REPLICA_FETCH_MAX_BYTES"] == "1048576"
    assert env["KAFKA_REPLICA_FETCH_RESPONSE_MAX_BYTES"] == "10485760"
    assert env["KAFKA_DEFAULT_REPLICATION_FACTOR"] == "1"
    assert env["KAFKA_MIN_INSYNC_REPLICAS"] == "1"
    assert env["KAFKA_UNCLEAN_LEADER_ELECTION_ENABLE"] == "false"
    assert env["KAFKA_LOG_RETENTION_MS"] == "1000"
    assert "KAFKA_ADVERTISED_LISTENERS" not in env


def test_wait_for_port(listener, closed_port):
    cancel = threading.Event()
    assert wait_for_port(f"127.0.0.1:{listener}", cancel)

    threading.Timer(0.2, cancel.set).start()
    assert not wait_for_port(f"127.0.0.1:{closed_port}", cancel)


def test_ensure_network_creates_missing_network():
    client = MagicMock()
    client.networks.get.side_effect = docker.errors.NotFound("no such network")

    network, created = ensure_network(client, "fabworld_network")

    assert created
    assert network is client.networks.create.return_value
    client.networks.create.assert_called_once_with("fabworld_network", driver="bridge")


def test_ensure_network_reuses_existing_network():
    client = MagicMock()

    network, created = ensure_network(client, "fabworld_network")

    assert not created
    client.networks.create.assert_not_called()


def test_remove_containers_by_name_skips_missing():
    client = MagicMock()
    found = MagicMock()
    client.containers.get.side_effect = [docker.errors.NotFound("gone"), found]

    remove_containers_by_name(client, ["a", "b"])

    found.remove.assert_called_once_with(force=True)


def test_remove_labelled_images():
    client = MagicMock()
    client.images.list.return_value = [MagicMock(id="sha256:1"), MagicMock(id="sha256:2")]

    remove_labelled_images(client, "org.hyperledger.fabric.chaincode.id.name=mycc")

    client.images.list.assert_called_once_with(filters={"label": "org.hyperledger.fabric.chaincode.id.name=mycc"})
    assert [c.args[0] for c in client.images.remove.call_args_list] == ["sha256:1", "sha256:2"]


@pytest.mark.docker
def test_zookeeper_container(docker_client):
    zk = Zookeeper(client=docker_client, start_timeout=60)

    handle = zk.start()
    try:
        assert zk.address is not None
        assert docker_client.containers.get(zk.container_id).status == "running"
    finally:
        handle.signal()
        handle.wait(30)

    with pytest.raises(docker.errors.NotFound):
        docker_client.containers.get(zk.container_id)


def test_remove_by_name():
    client = MagicMock()
    zk = Zookeeper(client=client, name="zookeeper1")

    zk.remove()

    client.containers.get.assert_called_once_with("zookeeper1")
    client.containers.get.return_value.remove.assert_called_once_with(force=True)
    assert zk.state is ContainerState.REMOVED
