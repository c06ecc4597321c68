from __future__ import annotations

import os
from functools import lru_cache

from flask import current_app

from netsuite_sync.contexts.netsuite.domain.gateway import NetSuiteGateway


def _read_setting(key: str, default: str) -> str:
    try:
        configured = current_app.config.get(key)
    except RuntimeError:
        configured = None
    if configured is not None:
        return str(configured)
    return str(os.environ.get(key) or default)


def _read_simulator_seed() -> int:
    raw = _read_setting("NETSUITE_SIMULATOR_SEED", "42").strip()
    try:
        return int(raw)
    except ValueError:
        return 42


@lru_cache(maxsize=1)
def build_netsuite_gateway() -> NetSuiteGateway:
    mode = _read_setting("NETSUITE_MODE", "simulator").strip().lower()
    if mode == "restlet":
        from netsuite_sync.contexts.netsuite.infrastructure.restlet_client import NetSuiteRestletGateway

        return NetSuiteRestletGateway()

    from netsuite_sync.contexts.netsuite.infrastructure.simulator import DeterministicNetSuiteSimulator

    return DeterministicNetSuiteSimulator(seed=_read_simulator_seed())


def reset_netsuite_gateway_for_tests() -> None:
    build_netsuite_gateway.cache_clear()
