"""Tests for the package layout and its public surface."""

import importlib

import pytest

import inventra_engine


@pytest.mark.parametrize("module", [
    "inventra_engine.audit.service",
    "inventra_engine.collaborators.clients",
    "inventra_engine.common.exceptions",
    "inventra_engine.connections.manager",
    "inventra_engine.descriptors.validator",
    "inventra_engine.entities.tables",
    "inventra_engine.executor.gate",
    "inventra_engine.isolation.enforcer",
    "inventra_engine.migration.service",
])
def test_subpackages_import_without_init_files(module):
    assert importlib.import_module(module).__name__ == module


def test_public_surface():
    assert inventra_engine.__version__ == "0.1.0"
    for name in inventra_engine.__all__:
        assert hasattr(inventra_engine, name)
