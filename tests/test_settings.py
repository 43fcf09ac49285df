import pytest

from workboard.remote.session import SSHIdentity, split_identity
from workboard.server.settings import Settings, load_settings


def test_defaults():
    s = load_settings({})
    assert s == Settings()
    assert s.database_url.startswith("sqlite+aiosqlite://")
    assert s.redis_url is None
    assert s.poll_interval == 30.0


def test_from_environment():
    s = load_settings({
        "WORKBOARD_SSH_HOST": "cluster",
        "WORKBOARD_SSH_USER": "alice",
        "WORKBOARD_SSH_PORT": "2222",
        "WORKBOARD_SSH_KEY_PASSPHRASE": "s3cret",
        "WORKBOARD_POLL_INTERVAL": "5",
        "WORKBOARD_REDIS_URL": "",
        "WORKBOARD_CONTAINER_PATH": "/c/ds.sif",
    })
    identity = s.identity()
    assert identity == SSHIdentity(host="cluster", username="alice", port=2222)
    assert identity.passphrase == "s3cret"
    assert "s3cret" not in repr(identity)
    assert s.poll_interval == 5.0
    assert s.redis_url is None
    assert s.container().image == "/c/ds.sif"


def test_identity_requires_host_and_user():
    with pytest.raises(ValueError):
        load_settings({"WORKBOARD_SSH_HOST": "cluster"}).identity()


@pytest.mark.parametrize(
    "target, expected",
    [
        ("alice@cluster", ("alice", "cluster", 22)),
        ("alice@cluster:2200", ("alice", "cluster", 2200)),
    ],
)
def test_split_identity(target, expected):
    assert split_identity(target) == expected


@pytest.mark.parametrize("target", ["cluster", "@cluster", "alice@"])
def test_split_identity_rejects(target):
    with pytest.raises(ValueError):
        split_identity(target)
