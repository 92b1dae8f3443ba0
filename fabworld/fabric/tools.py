import os
from typing import Dict, Iterable, List

import yaml

from fabworld.config import log
from fabworld.fabric.topology import OrdererOrg, PeerOrg

CONSORTIUM_NAME = "MyConsortium"

# Subject of the CA certificates generated by cryptogen
CA_SUBJECT = {
    "Country": "US",
    "Province": "California",
    "Locality": "San Francisco",
}


class PortGenerator:
    def __init__(self, start_port):
        self.start_port = start_port
        self.current_port = start_port

    def get_port(self):
        self.current_port += 1
        return self.current_port


def crypto_config(orderer_orgs: Iterable[OrdererOrg], peer_orgs: Iterable[PeerOrg]) -> Dict:
    """ Builds the cryptogen input document """
    return {
        "OrdererOrgs": [
            {
                "Name": org.name,
                "Domain": org.domain,
                "CA": dict(CA_SUBJECT),
                "Specs": [{"Hostname": name} for name in org.orderer_names],
            }
            for org in orderer_orgs
        ],
        "PeerOrgs": [
            {
                "Name": org.name,
                "Domain": org.domain,
                "EnableNodeOUs": org.enable_node_ous,
                "CA": dict(CA_SUBJECT),
                "Template": {"Count": org.peer_count},
                "Users": {"Count": org.user_count},
            }
            for org in peer_orgs
        ],
    }


def generate_crypto_yaml(orderer_orgs, peer_orgs, out_filename):
    with open(out_filename, "w") as f:
        yaml.dump(crypto_config(orderer_orgs, peer_orgs), f, sort_keys=False)
    log.debug("Wrote crypto config to %s", out_filename)
    return out_filename


def _orderer_org_entry(org: OrdererOrg) -> Dict:
    return {
        "Name": org.name,
        "ID": org.local_msp_id(),
        "MSPDir": org.msp_dir(),
    }


def _peer_org_entry(org: PeerOrg) -> Dict:
    return {
        "Name": org.name,
        "ID": org.local_msp_id(),
        "MSPDir": org.msp_dir(),
        "AnchorPeers": [{"Host": f"peer0.{org.domain}", "Port": org.anchor_port}],
    }


def build_profiles(orderer_orgs: List[OrdererOrg],
                   peer_orgs: List[PeerOrg],
                   orderer_profile_name: str,
                   channel_profile_name: str,
                   orderer_addresses: Iterable[str] = ("0.0.0.0:7050",),
                   kafka_brokers: Iterable[str] = (),
                   ) -> Dict:
    """ Builds the configtxgen profiles for a system channel and one application channel.

    :param orderer_profile_name: Name of the profile used for the genesis block
    :param channel_profile_name: Name of the profile used for the application channel
    :param orderer_addresses: Orderer endpoints advertised in the genesis block
    :param kafka_brokers: Host addresses of the Kafka brokers. The orderer type is
        kafka when this is non-empty, solo otherwise.
    :return: dict with one entry per profile name
    """
    kafka_brokers = list(kafka_brokers)
    orderer = {
        "OrdererType": "kafka" if kafka_brokers else "solo",
        "Addresses": list(orderer_addresses),
        "BatchTimeout": "1s",
        "BatchSize": {
            "MaxMessageCount": 1,
            "AbsoluteMaxBytes": 98 * 1024 * 1024,
            "PreferredMaxBytes": 512 * 1024,
        },
        "Kafka": {"Brokers": kafka_brokers},
        "Organizations": [_orderer_org_entry(o) for o in orderer_orgs],
        "Capabilities": {"V1_1": True},
    }
    orderer_profile = {
        "Capabilities": {"V1_1": True},
        "Orderer": orderer,
        "Application": {
            "Organizations": [_orderer_org_entry(o) for o in orderer_orgs],
            "Capabilities": {"V1_2": True},
        },
        "Consortiums": {
            CONSORTIUM_NAME: {
                "Organizations": [_orderer_org_entry(o) for o in orderer_orgs] +
                                 [_peer_org_entry(p) for p in peer_orgs],
            },
        },
    }
    channel_profile = {
        "Consortium": CONSORTIUM_NAME,
        "Capabilities": {"V1_1": True},
        "Application": {
            "Organizations": [_peer_org_entry(p) for p in peer_orgs],
            "Capabilities": {"V1_2": True},
        },
    }
    return {
        orderer_profile_name: orderer_profile,
        channel_profile_name: channel_profile,
    }


def generate_topology(n_orgs, n_peer_per_org, broker_count=0, zookeeper_count=1, kafka_start_port=9091,
                      orderer_profile_name="TwoOrgsOrdererGenesis", channel_profile_name="TwoOrgsChannel"):
    """ Builds an example.com style topology: one orderer org and ``n_orgs`` peer orgs.

    Kafka brokers, if any, are published on consecutive host ports after ``kafka_start_port``.

    :return: (orderer_orgs, peer_orgs, profiles)
    """
    pg = PortGenerator(kafka_start_port)
    orderer_orgs = [
        OrdererOrg(
            name="ExampleCom",
            domain="example.com",
            profile=orderer_profile_name,
            orderer_names=("orderer0",),
            broker_count=broker_count,
            zookeeper_count=zookeeper_count if broker_count else 0,
        )
    ]
    peer_orgs = [
        PeerOrg(
            name=f"Org{i}ExampleCom",
            domain=f"org{i}.example.com",
            profile=channel_profile_name,
            peer_count=n_peer_per_org,
            user_count=1,
            enable_node_ous=True,
        )
        for i in range(1, n_orgs + 1)
    ]
    brokers = [f"127.0.0.1:{pg.get_port()}" for _ in range(broker_count)]
    profiles = build_profiles(orderer_orgs, peer_orgs, orderer_profile_name, channel_profile_name,
                              kafka_brokers=brokers)
    return orderer_orgs, peer_orgs, profiles


def kafka_broker_addresses(profiles: Dict, profile_name: str) -> List[str]:
    """ Returns the Kafka broker list declared in a profile, empty if there is none """
    orderer = profiles.get(profile_name, {}).get("Orderer") or {}
    return list((orderer.get("Kafka") or {}).get("Brokers") or [])


def generate_configtx_yaml(profiles: Dict, base_dir, out_filename="configtx.yaml"):
    """ Writes the profiles into ``base_dir``/configtx.yaml, the file configtxgen reads via FABRIC_CFG_PATH """
    path = os.path.join(base_dir, out_filename)
    with open(path, "w") as f:
        yaml.dump({"Profiles": profiles}, f, sort_keys=False)
    log.debug("Wrote configtx profiles %s to %s", list(profiles), path)
    return path
