import os

import pytest


@pytest.fixture(scope="session")
def node_config_dir():
    """ Directory holding orderer.yaml and core.yaml for the nodes under test """
    path = os.environ.get("FABWORLD_NODE_CONFIG_DIR")
    if not path or not os.path.isdir(path):
        pytest.skip("FABWORLD_NODE_CONFIG_DIR is not set")
    return path
