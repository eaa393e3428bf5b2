from pathlib import Path

import pytest

from depup.errors import (
    ConfigurationError,
    PublishTransportError,
    PublishValidationError,
    ScopeNotFoundError,
)
from depup.models import RevisionStatus
from depup.publisher import NpmPublisher, PublishGate, should_publish, validate_for_publish

from conftest import FakeInstaller


PUBLISH = ("npm", "publish", "--access", "public")


class FakePublisher:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    def publish(self, directory, scoped_name, version, auth_token):
        self.calls.append((directory, scoped_name, version, auth_token))
        if self.error:
            raise self.error


def _manifest(**extra):
    package_json = {"name": "@depup/lodash", "version": "4.17.21-depup.0"}
    package_json.update(extra)
    return package_json


@pytest.mark.parametrize(
    "index, updated, requested, expected",
    [
        (0, 0, True, True),
        (0, 3, True, True),
        (1, 0, True, False),
        (1, 2, True, True),
        (5, 1, True, True),
        (0, 0, False, False),
        (3, 4, False, False),
    ],
)
def test_should_publish(index, updated, requested, expected) -> None:
    assert should_publish(index, updated, requested) is expected


def test_validate_for_publish() -> None:
    validate_for_publish(_manifest(scripts={"test": "jest", "prepare": "tsc"}))

    with pytest.raises(PublishValidationError):
        validate_for_publish(_manifest(name="lodash"))
    with pytest.raises(PublishValidationError):
        validate_for_publish(_manifest(name="@depup/"))
    with pytest.raises(PublishValidationError):
        validate_for_publish(_manifest(scripts={"postinstall": "node evil.js"}))


def test_gate_not_requested(tmp_path: Path) -> None:
    publisher = FakePublisher()
    gate = PublishGate(publisher, auth_token="token")

    assert gate.run(tmp_path, _manifest(), 0, 0, requested=False) is RevisionStatus.PREPARED
    assert publisher.calls == []


def test_gate_skips_revision_without_updates(tmp_path: Path) -> None:
    publisher = FakePublisher()
    gate = PublishGate(publisher, auth_token=None)

    status = gate.run(tmp_path, _manifest(version="4.17.21-depup.1"), 1, 0, requested=True)

    assert status is RevisionStatus.SKIPPED
    assert publisher.calls == []


def test_gate_publishes_first_revision(tmp_path: Path) -> None:
    publisher = FakePublisher()
    gate = PublishGate(publisher, auth_token="token")

    status = gate.run(tmp_path, _manifest(), 0, 0, requested=True)

    assert status is RevisionStatus.PUBLISHED
    assert publisher.calls == [(tmp_path, "@depup/lodash", "4.17.21-depup.0", "token")]


def test_gate_validation_error_propagates(tmp_path: Path) -> None:
    publisher = FakePublisher()
    gate = PublishGate(publisher, auth_token="token")

    with pytest.raises(PublishValidationError):
        gate.run(tmp_path, _manifest(scripts={"preinstall": "x"}), 0, 0, requested=True)
    assert publisher.calls == []


def test_gate_requires_token(tmp_path: Path) -> None:
    gate = PublishGate(FakePublisher(), auth_token=None)

    with pytest.raises(ConfigurationError):
        gate.run(tmp_path, _manifest(), 0, 0, requested=True)


def test_gate_transport_error_propagates(tmp_path: Path) -> None:
    error = PublishTransportError("@depup/lodash", "4.17.21-depup.0", "403")
    gate = PublishGate(FakePublisher(error=error), auth_token="token")

    with pytest.raises(PublishTransportError):
        gate.run(tmp_path, _manifest(), 0, 0, requested=True)


def test_npm_publisher_uses_prerelease_tag_and_token(tmp_path: Path) -> None:
    installer = FakeInstaller()

    NpmPublisher(installer).publish(tmp_path, "@depup/lodash", "4.17.21-depup.0", "secret")

    assert installer.commands() == [("npm", "install"), PUBLISH + ("--tag", "beta")]
    publish_call = installer.calls[-1]
    assert publish_call["env"] == {"NODE_AUTH_TOKEN": "secret"}
    assert publish_call["timeout"] == 120


def test_npm_publisher_scope_not_found(tmp_path: Path) -> None:
    command = PUBLISH + ("--tag", "beta")
    installer = FakeInstaller(
        failing=[command],
        outputs={command: "npm ERR! 404 Scope not found"},
    )

    with pytest.raises(ScopeNotFoundError) as excinfo:
        NpmPublisher(installer).publish(tmp_path, "@depup/lodash", "4.17.21-depup.0", "secret")

    assert excinfo.value.scope == "depup"
    assert "npmjs.com/org/create" in str(excinfo.value)


def test_npm_publisher_other_failure(tmp_path: Path) -> None:
    command = PUBLISH + ("--tag", "beta")
    installer = FakeInstaller(failing=[command], outputs={command: "npm ERR! 403 Forbidden"})

    with pytest.raises(PublishTransportError) as excinfo:
        NpmPublisher(installer).publish(tmp_path, "@depup/lodash", "4.17.21-depup.0", "secret")

    assert not isinstance(excinfo.value, ScopeNotFoundError)
    assert "403" in excinfo.value.reason
