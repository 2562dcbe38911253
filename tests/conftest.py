"""Pytest fixtures for the VM custom attribute tests."""

import logging
from typing import Dict, List
from unittest.mock import MagicMock

import pytest

from set_vm_custom_attributes import VCenterSession, logger


class FakeVCenter:
    """In-memory vCenter behind a MagicMock session.

    VM handles are the VM names themselves.
    """

    def __init__(self) -> None:
        self.definitions: List[str] = []
        self.vms: Dict[str, Dict[str, str]] = {}
        self.session = MagicMock(spec=VCenterSession)
        self.session.list_attribute_definitions.side_effect = self._list_definitions
        self.session.create_attribute_definition.side_effect = self.definitions.append
        self.session.find_vm.side_effect = lambda name: name if name in self.vms else None
        self.session.get_annotation.side_effect = lambda vm, name: self.vms[vm].get(name, "")
        self.session.set_annotation.side_effect = self._set_annotation

    def _list_definitions(self) -> Dict[str, MagicMock]:
        return {name: MagicMock() for name in self.definitions}

    def _set_annotation(self, vm: str, name: str, value: str) -> None:
        self.vms[vm][name] = value


@pytest.fixture
def vcenter() -> FakeVCenter:
    """Create a fake vCenter with no VMs and no custom attributes."""
    return FakeVCenter()


@pytest.fixture
def write_csv(tmp_path):
    """Write a CSV input file into tmp_path and return its path."""

    def _write(content: str, name: str = "attributes.csv"):
        path = tmp_path / name
        path.write_text(content, encoding="utf-8")
        return path

    return _write


@pytest.fixture(autouse=True)
def reset_logger():
    """Drop handlers added by setup_logging between tests."""
    yield
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)
