from __future__ import annotations

from pathlib import Path

import pytest

from adsync.adapters import DemoSyncAdapter, GoogleSyncAdapter, MetaSyncAdapter
from adsync.db import AdsDB
from adsync.registry import adapter_factory, build_adapter
from adsync.repo import Repo


def _repo(tmp_path: Path) -> Repo:
    db_path = tmp_path / "adsync.sqlite3"
    AdsDB(db_path).init()
    return Repo(db_path)


def test_build_adapter_picks_provider_or_demo(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    common = dict(integration_id="int_1", user_id="u1", repo=repo)

    assert isinstance(build_adapter("meta", config_json="{}", demo_mode=False, **common), MetaSyncAdapter)
    assert isinstance(build_adapter("google", config_json=None, demo_mode=False, **common), GoogleSyncAdapter)
    assert isinstance(build_adapter("meta", config_json="{}", demo_mode=True, **common), DemoSyncAdapter)
    assert isinstance(build_adapter("google", config_json='{"demo": true}', demo_mode=False, **common), DemoSyncAdapter)

    with pytest.raises(ValueError):
        build_adapter("tiktok", config_json="{}", demo_mode=False, **common)


def test_factory_scopes_writes_to_the_integration(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    iid = repo.create_integration(user_id="u1", provider="google", config={"demo": True, "demo_days": 2})
    factory = adapter_factory(repo, demo_mode=False)

    adapter = factory(repo.get_integration(iid))
    adapter.repo.upsert_entity(
        provider="google",
        entity_type="campaign",
        entity_id="g1",
        account_id="acc",
        parent_type=None,
        parent_id=None,
        campaign_id="g1",
        name="G",
        status="ENABLED",
    )

    assert repo.get_campaign("g1")["integration_id"] == iid
    assert adapter.repo.get_integration(iid)["id"] == iid
