from __future__ import annotations

import pytest

from ledgermirror.config import MirrorConfig
from ledgermirror.exceptions import MirrorConfigError

CONTRACT = "0x" + "cc" * 20

_ENV_KEYS = (
    "LEDGERMIRROR_RPC_URL",
    "RPC_URL",
    "LEDGERMIRROR_WS_URL",
    "WS_URL",
    "LEDGERMIRROR_STORE_URL",
    "STORE_URL",
    "LEDGERMIRROR_CONTRACT_ADDRESS",
    "CONTRACT_ADDRESS",
    "LEDGERMIRROR_CHUNK_SIZE",
    "LEDGERMIRROR_RECONCILE_AFTER_BACKFILL",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def test_from_env_reads_prefixed_and_fallback_names(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RPC_URL", "http://fallback")
    monkeypatch.setenv("LEDGERMIRROR_RPC_URL", "http://primary")
    monkeypatch.setenv("CONTRACT_ADDRESS", CONTRACT)
    monkeypatch.setenv("LEDGERMIRROR_CHUNK_SIZE", "500")
    monkeypatch.setenv("LEDGERMIRROR_RECONCILE_AFTER_BACKFILL", "yes")

    config = MirrorConfig.from_env()

    assert config.rpc_url == "http://primary"
    assert config.contract_address == CONTRACT
    assert config.chunk_size == 500
    assert config.reconcile_after_backfill is True
    assert config.ws_url is None


def test_overrides_win_over_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LEDGERMIRROR_RPC_URL", "http://primary")
    monkeypatch.setenv("LEDGERMIRROR_CHUNK_SIZE", "500")

    config = MirrorConfig.from_env(contract_address=CONTRACT, chunk_size=50)

    assert config.chunk_size == 50


def test_missing_required_setting_raises() -> None:
    with pytest.raises(MirrorConfigError, match="rpc_url"):
        MirrorConfig.from_env(contract_address=CONTRACT)


def test_invalid_number_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LEDGERMIRROR_CHUNK_SIZE", "lots")

    with pytest.raises(MirrorConfigError):
        MirrorConfig.from_env(rpc_url="http://node", contract_address=CONTRACT)


@pytest.mark.parametrize(
    "overrides",
    [
        {"contract_address": "0x1234"},
        {"chunk_size": 0},
        {"retry_ceiling": 0},
        {"start_block": -1},
        {"reconcile_policy": "sometimes"},
    ],
)
def test_validate_rejects_bad_values(overrides: dict) -> None:
    options = {"rpc_url": "http://node", "contract_address": CONTRACT, **overrides}

    with pytest.raises(MirrorConfigError):
        MirrorConfig(**options).validate()


def test_defaults_validate() -> None:
    config = MirrorConfig(rpc_url="http://node", contract_address=CONTRACT).validate()

    assert config.reconcile_policy == "store"
    assert config.store_url.startswith("sqlite+aiosqlite")
