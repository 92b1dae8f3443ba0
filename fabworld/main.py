import argparse
import os
import sys

import docker

from fabworld.components import Components
from fabworld.config import BASE_DIR, FABRIC_BIN_DIR, cleanup, log
from fabworld.container import remove_labelled_containers
from fabworld.errors import HarnessError
from fabworld.fabric.channels import ChannelSetup, chaincode_args
from fabworld.fabric.network import FabricWorld
from fabworld.fabric.tools import generate_topology
from fabworld.fabric.topology import Chaincode, Deployment

# Set to True to wait for user input before tearing the network down
INTERACTIVITY = False


def interactive(f):
    """Wrapper that executes the function only if INTERACTIVITY is True"""
    def wrapper(*args, **kwargs):
        if INTERACTIVITY:
            return f(*args, **kwargs)
        else:
            return None
    return wrapper


@interactive
def pause(msg):
    return input(msg)


def build_parser():
    parser = argparse.ArgumentParser(prog="fabworld", description="Bootstrap a Hyperledger Fabric test network, set up a channel and deploy a chaincode.", add_help=True)
    parser.add_argument("--interactive", action="store_true", help="Wait for user input before tearing the network down")
    parser.add_argument("--clean", action="store_true", help="Remove the base directory and every container left by a previous run, then exit")
    parser.add_argument("--bootstrap-only", action="store_true", help="Generate crypto material and channel artifacts, then exit")

    # Locations
    parser.add_argument("--base-dir", type=str, default=BASE_DIR, help="Working directory of the network")
    parser.add_argument("--bin-dir", type=str, default=FABRIC_BIN_DIR, help="Directory holding cryptogen, configtxgen, orderer and peer")
    parser.add_argument("--build", action="store_true", help="Build the binaries with `go build` instead of using --bin-dir")
    parser.add_argument("--node-config-dir", type=str, help="Directory holding orderer.yaml and the peers core.yaml files")

    # Fabric network parameters
    parser.add_argument("--n-orgs", type=int, default=2, help="Number of peer organizations")
    parser.add_argument("--n-peer-per-org", type=int, default=2, help="Number of peers per organization")
    parser.add_argument("--brokers", type=int, default=0, help="Number of Kafka brokers, 0 for a solo orderer")
    parser.add_argument("--zookeepers", type=int, default=1, help="Number of ZooKeeper nodes, used with --brokers")
    parser.add_argument("--settle-delay", type=float, default=0, help="Seconds to wait between ZooKeeper and Kafka startup")

    # Deployment
    parser.add_argument("--channel", type=str, default="mychannel", help="Application channel name")
    parser.add_argument("--system-channel", type=str, default="syschannel", help="System channel name")
    parser.add_argument("--orderer", type=str, default="127.0.0.1:7050", help="Orderer address used by the peer CLI")
    parser.add_argument("--smart-contract-name", type=str, default="mycc", help="Chaincode to deploy")
    parser.add_argument("--smart-contract-path", type=str, default="simple/cmd", help="Chaincode path inside GOPATH")
    parser.add_argument("--smart-contract-ver", type=str, default="1.0", help="Chaincode version")
    parser.add_argument("--smart-contract-gopath", type=str, help="GOPATH used to install the chaincode")
    return parser


def main(argv=None):
    global INTERACTIVITY
    args = build_parser().parse_args(argv)
    if args.interactive:
        INTERACTIVITY = True

    if args.clean:
        cleanup(args.base_dir)
        remove_labelled_containers(docker.from_env())
        return 0

    # Bootstrap needs a fresh directory
    cleanup(args.base_dir)
    os.makedirs(args.base_dir, exist_ok=True)

    if args.build:
        components = Components().build()
    else:
        components = Components.from_bin_dir(args.bin_dir)

    orderer_orgs, peer_orgs, profiles = generate_topology(
        n_orgs=args.n_orgs,
        n_peer_per_org=args.n_peer_per_org,
        broker_count=args.brokers,
        zookeeper_count=args.zookeepers,
    )
    policy = "OR (" + ",".join(f"'{org.local_msp_id()}.member'" for org in peer_orgs) + ")"
    deployment = Deployment(
        channel=args.channel,
        system_channel=args.system_channel,
        chaincode=Chaincode(
            name=args.smart_contract_name,
            version=args.smart_contract_ver,
            path=args.smart_contract_path,
            gopath=args.smart_contract_gopath,
            exec_path=os.environ.get("PATH"),
        ),
        init_args=chaincode_args("init", "a", "100", "b", "200"),
        policy=policy,
        orderer=args.orderer,
        peers=tuple(name for org in peer_orgs for name in org.peer_names()),
    )

    try:
        with FabricWorld(
            rootpath=args.base_dir,
            components=components,
            orderer_orgs=orderer_orgs,
            peer_orgs=peer_orgs,
            profiles=profiles,
            deployment=deployment,
            orderer_profile_name=orderer_orgs[0].profile,
            channel_profile_name=peer_orgs[0].profile,
            settle_delay=args.settle_delay,
        ) as world:
            world.bootstrap()
            if args.bootstrap_only:
                log.info("Artifacts written to %s", args.base_dir)
                return 0

            if args.node_config_dir:
                world.copy_node_configs(args.node_config_dir)
            world.build_network()

            setup = ChannelSetup(world)
            setup.setup_channel()
            for org in peer_orgs:
                setup.update_anchor_peers(org)
            log.info("Query result: %s", setup.query(chaincode_args("query", "a")))

            pause("Network is up, press enter to tear it down...")
    except HarnessError as e:
        log.error("fabworld: %s", e)
        return 1
    finally:
        if args.build:
            components.cleanup()
    return 0


if __name__ == "__main__":
    sys.exit(main())
