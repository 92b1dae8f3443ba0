import yaml

from fabworld.fabric.tools import (PortGenerator, build_profiles, crypto_config,
                                   generate_configtx_yaml, generate_crypto_yaml,
                                   generate_topology, kafka_broker_addresses)
from fabworld.fabric.topology import OrdererOrg, PeerOrg

ORDERER_ORG = OrdererOrg(name="ExampleCom", domain="example.com", profile="TwoOrgsOrdererGenesis")
PEER_ORGS = [
    PeerOrg(name="Org1ExampleCom", domain="org1.example.com", profile="TwoOrgsChannel",
            peer_count=2, user_count=2, enable_node_ous=True),
    PeerOrg(name="Org2ExampleCom", domain="org2.example.com", profile="TwoOrgsChannel"),
]


def test_crypto_yaml(tmp_path):
    path = generate_crypto_yaml([ORDERER_ORG], PEER_ORGS, str(tmp_path / "crypto.yaml"))

    with open(path) as f:
        doc = yaml.safe_load(f)

    assert doc == crypto_config([ORDERER_ORG], PEER_ORGS)
    assert doc["OrdererOrgs"][0]["Specs"] == [{"Hostname": "orderer0"}]
    assert doc["OrdererOrgs"][0]["CA"]["Locality"] == "San Francisco"
    org1 = doc["PeerOrgs"][0]
    assert org1["Domain"] == "org1.example.com"
    assert org1["EnableNodeOUs"] is True
    assert org1["Template"] == {"Count": 2}
    assert org1["Users"] == {"Count": 2}


def test_solo_profiles():
    profiles = build_profiles([ORDERER_ORG], PEER_ORGS, "TwoOrgsOrdererGenesis", "TwoOrgsChannel")

    orderer = profiles["TwoOrgsOrdererGenesis"]["Orderer"]
    assert orderer["OrdererType"] == "solo"
    assert orderer["Addresses"] == ["0.0.0.0:7050"]
    assert orderer["Organizations"][0]["MSPDir"] == "crypto/ordererOrganizations/example.com/msp"

    consortium = profiles["TwoOrgsOrdererGenesis"]["Consortiums"]["MyConsortium"]["Organizations"]
    assert [o["Name"] for o in consortium] == ["ExampleCom", "Org1ExampleCom", "Org2ExampleCom"]

    channel = profiles["TwoOrgsChannel"]
    assert channel["Consortium"] == "MyConsortium"
    org1 = channel["Application"]["Organizations"][0]
    assert org1["ID"] == "Org1ExampleCom"
    assert org1["AnchorPeers"] == [{"Host": "peer0.org1.example.com", "Port": 7051}]


def test_kafka_profiles():
    brokers = ["127.0.0.1:9092", "127.0.0.1:9093"]
    profiles = build_profiles([ORDERER_ORG], PEER_ORGS, "Genesis", "Channel", kafka_brokers=brokers)

    assert profiles["Genesis"]["Orderer"]["OrdererType"] == "kafka"
    assert kafka_broker_addresses(profiles, "Genesis") == brokers
    assert kafka_broker_addresses(profiles, "Channel") == []


def test_configtx_yaml(tmp_path):
    profiles = build_profiles([ORDERER_ORG], PEER_ORGS, "Genesis", "Channel")

    path = generate_configtx_yaml(profiles, str(tmp_path))

    assert path == str(tmp_path / "configtx.yaml")
    with open(path) as f:
        doc = yaml.safe_load(f)
    assert list(doc) == ["Profiles"]
    assert doc["Profiles"]["Genesis"]["Orderer"]["BatchTimeout"] == "1s"
    assert doc["Profiles"]["Genesis"]["Orderer"]["BatchSize"]["AbsoluteMaxBytes"] == 98 * 1024 * 1024


def test_generate_topology():
    orderer_orgs, peer_orgs, profiles = generate_topology(n_orgs=3, n_peer_per_org=2, broker_count=2,
                                                          zookeeper_count=3)

    assert orderer_orgs[0].broker_count == 2
    assert orderer_orgs[0].zookeeper_count == 3
    assert [o.domain for o in peer_orgs] == ["org1.example.com", "org2.example.com", "org3.example.com"]
    assert peer_orgs[0].peer_names() == ["peer0.org1.example.com", "peer1.org1.example.com"]
    assert kafka_broker_addresses(profiles, "TwoOrgsOrdererGenesis") == ["127.0.0.1:9092", "127.0.0.1:9093"]


def test_solo_topology_has_no_zookeeper():
    orderer_orgs, _, profiles = generate_topology(n_orgs=1, n_peer_per_org=1)

    assert orderer_orgs[0].broker_count == 0
    assert orderer_orgs[0].zookeeper_count == 0
    assert profiles["TwoOrgsOrdererGenesis"]["Orderer"]["OrdererType"] == "solo"


def test_port_generator():
    pg = PortGenerator(7050)

    assert [pg.get_port(), pg.get_port()] == [7051, 7052]
