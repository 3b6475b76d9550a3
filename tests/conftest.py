"""Shared fixtures: a reconciler wired to in-memory fakes of every backend."""

import pytest

from vipingress.models import OperatorConfig
from vipingress.reconciler import IngressReconciler
from vipingress.state import StateTracker

from fakes import (
    OPERATOR_NS,
    FakeDirectory,
    FakeRecorder,
    FakeStore,
    FakeTailnet,
    make_proxy_group,
    replica_config_secret,
    serve_config_map,
)


@pytest.fixture
def operator_config():
    return OperatorConfig(operator_namespace=OPERATOR_NS, operator_id="operator-1", default_tags=["tag:k8s"])


@pytest.fixture
def store():
    s = FakeStore()
    s.add("ProxyGroup", make_proxy_group())
    s.add("ConfigMap", serve_config_map())
    s.add("Secret", replica_config_secret())
    return s


@pytest.fixture
def directory():
    return FakeDirectory()


@pytest.fixture
def recorder():
    return FakeRecorder()


@pytest.fixture
def reconciler(store, directory, recorder, operator_config):
    return IngressReconciler(
        store=store,
        directory=directory,
        tailnet=FakeTailnet(),
        recorder=recorder,
        operator_config=operator_config,
        tracker=StateTracker(),
    )
