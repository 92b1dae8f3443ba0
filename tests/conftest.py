import os
import stat
import sys
import textwrap

import docker
import pytest

from fabworld.components import Components
from fabworld.config import FABRIC_BIN_DIR


@pytest.fixture(scope="session")
def components():
    """ Fabric binaries, resolved once per test session """
    try:
        return Components.from_bin_dir(os.environ.get("FABWORLD_BIN_DIR", FABRIC_BIN_DIR))
    except FileNotFoundError as e:
        pytest.skip(f"Fabric binaries not available: {e}")


@pytest.fixture(scope="session")
def docker_client():
    try:
        client = docker.from_env()
        client.ping()
    except docker.errors.DockerException as e:
        pytest.skip(f"Docker daemon not available: {e}")
    return client


@pytest.fixture
def make_script(tmp_path):
    """ Writes an executable Python script into tmp_path and returns its path """
    def make(name, body):
        path = tmp_path / name
        path.write_text(f"#!{sys.executable}\n" + textwrap.dedent(body))
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(path)
    return make
