"""Shared fixtures for the tests."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest

from kubevolumecleaner.controller import Controller

from support import FakeK8sClient, FakeWatchFactory


@pytest.fixture
def k8s_client() -> FakeK8sClient:
    return FakeK8sClient()


@pytest.fixture
def make_controller(
    k8s_client: FakeK8sClient,
) -> Callable[..., Controller]:
    """Create controllers whose claim writes are mirrored into the cache,
    the way the claim watch would.
    """

    def _make(**kwargs: Any) -> Controller:
        kwargs.setdefault("watch_factory", FakeWatchFactory())
        controller = Controller(k8s_client=k8s_client, **kwargs)
        k8s_client.core_api.on_replace = controller.claim_informer.cache.upsert
        return controller

    return _make
