import pytest

from kubejoin.errors import InvalidNodeNameError
from kubejoin.utils.normalize import normalize_version, validate_node_name


@pytest.mark.parametrize("raw", ["v1.28.0", "1.28.0", " V1.28.0 "])
def test_version_prefix_is_stripped(raw):
    assert normalize_version(raw) == "1.28.0"


def test_normalize_is_idempotent():
    once = normalize_version("v1.7.22")
    assert normalize_version(once) == once


def test_prerelease_suffix_is_kept():
    assert normalize_version("v1.30.0-rc.1") == "1.30.0-rc.1"


@pytest.mark.parametrize("raw", ["", "latest", "1.28", "vv1.28.0", "1.28.0; rm -rf /"])
def test_invalid_versions_rejected(raw):
    with pytest.raises(ValueError):
        normalize_version(raw)


@pytest.mark.parametrize("name", ["worker-1", "ubuntu-worker-01", "node.example.com", "a"])
def test_valid_node_names(name):
    assert validate_node_name(name) == name


@pytest.mark.parametrize("name", ["", "Worker-1", "-worker", "worker-", "work er", "worker_1", "a" * 254, "x;reboot"])
def test_invalid_node_names(name):
    with pytest.raises(InvalidNodeNameError) as excinfo:
        validate_node_name(name)
    assert excinfo.value.phase == "input"
