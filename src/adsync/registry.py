from __future__ import annotations

import json
from typing import Any, Callable

from adsync.adapters.base import AdapterContext
from adsync.adapters.demo import DemoSyncAdapter
from adsync.adapters.google_ads import GoogleSyncAdapter
from adsync.adapters.meta_ads import MetaSyncAdapter


ADAPTERS: dict[str, type] = {
    "meta": MetaSyncAdapter,
    "google": GoogleSyncAdapter,
}


class _IntegrationScopedRepo:
    """
    Inject integration_id into adapter-owned entity/metric/breakdown upserts.
    Other repository APIs are transparently forwarded.
    """

    def __init__(self, repo, integration_id: str):
        self._repo = repo
        self._integration_id = integration_id

    def _stamp(self, kwargs: dict[str, Any]) -> dict[str, Any]:
        if kwargs.get("integration_id") is None:
            kwargs["integration_id"] = self._integration_id
        return kwargs

    def upsert_entity(self, **kwargs: Any) -> None:
        self._repo.upsert_entity(**self._stamp(kwargs))

    def upsert_metric_daily(self, **kwargs: Any) -> None:
        self._repo.upsert_metric_daily(**self._stamp(kwargs))

    def upsert_breakdown(self, **kwargs: Any) -> None:
        self._repo.upsert_breakdown(**self._stamp(kwargs))

    def __getattr__(self, name: str) -> Any:
        return getattr(self._repo, name)


def build_adapter(
    provider: str,
    *,
    integration_id: str,
    user_id: str,
    config_json: str | None,
    repo,
    demo_mode: bool,
):
    config = json.loads(config_json or "{}")
    ctx = AdapterContext(integration_id=integration_id, user_id=user_id, provider=provider, config=config)
    scoped_repo = _IntegrationScopedRepo(repo, integration_id=integration_id)

    if demo_mode or config.get("demo"):
        return DemoSyncAdapter(ctx, scoped_repo)

    cls = ADAPTERS.get(provider)
    if cls is None:
        raise ValueError(f"Unknown provider: {provider}")
    return cls(ctx, scoped_repo)


def adapter_factory(repo, *, demo_mode: bool) -> Callable[[dict[str, Any]], Any]:
    """Return the scheduler's factory: integration row -> adapter."""

    def factory(integration: dict[str, Any]):
        return build_adapter(
            str(integration["provider"]),
            integration_id=str(integration["id"]),
            user_id=str(integration["user_id"]),
            config_json=integration.get("config_json"),
            repo=repo,
            demo_mode=demo_mode,
        )

    return factory
