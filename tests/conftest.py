"""Shared fakes for the runbook's capability interfaces."""

from __future__ import annotations

from pathlib import Path

import pytest

from vm_script_runner.errors import InstanceNotFound
from vm_script_runner.models import EMPTY_MARKER, ExtensionStatus


class FakeAuth:
    def __init__(self) -> None:
        self.calls = 0

    def authenticate(self):
        self.calls += 1
        return object()


class FakeBlobStore:
    def __init__(self, containers: dict[str, dict[str, str]] | None = None) -> None:
        self.containers = containers if containers is not None else {}
        self.created: list[str] = []
        self.uploads: list[tuple[str, str, str]] = []

    def container_exists(self, container):
        return container in self.containers

    def create_container(self, container):
        self.created.append(container)
        self.containers.setdefault(container, {})

    def blob_exists(self, container, name):
        return name in self.containers.get(container, {})

    def upload_file(self, container, name, path):
        content = Path(path).read_text(encoding="utf-8")
        self.containers[container][name] = content
        self.uploads.append((container, name, content))
        return self.blob_url(container, name)

    def blob_url(self, container, name):
        return f"https://acct.blob.core.windows.net/{container}/{name}"


class FakeVM:
    """InstanceDirectory + ExtensionConfigurator for a single VM.

    ``statuses`` are returned in order by get_extension_status; the last one
    repeats once the list is exhausted.
    """

    def __init__(self, name: str = "vm1", statuses: list[ExtensionStatus] | None = None) -> None:
        self.name = name
        self.statuses = list(statuses or [ExtensionStatus(marker=EMPTY_MARKER)])
        self.status_queries = 0
        self.applied = []

    def _check(self, vm_name):
        if vm_name != self.name:
            raise InstanceNotFound(f"VM '{vm_name}' not found")

    def get_location(self, vm_name):
        self._check(vm_name)
        return "eastus"

    def get_extension_status(self, vm_name):
        self._check(vm_name)
        index = min(self.status_queries, len(self.statuses) - 1)
        self.status_queries += 1
        return self.statuses[index]

    def apply_custom_script(self, vm_name, config):
        self._check(vm_name)
        self.applied.append(config)


@pytest.fixture
def auth():
    return FakeAuth()


@pytest.fixture
def blobs():
    return FakeBlobStore()


@pytest.fixture
def vm():
    return FakeVM()


@pytest.fixture
def make_vm():
    """Factory for FakeVM with a scripted sequence of extension statuses."""
    return FakeVM
