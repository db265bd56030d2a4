"""Remote and local rule backends behind one contract.

RuleStore only sequences "remote, then local on TransportFailure"; each
backend knows how to perform the operation on its own medium.
"""
from __future__ import annotations

import random
import string
import time
from datetime import datetime
from typing import Any, Callable, Optional, Protocol, Sequence, Union

import httpx
import structlog
from pydantic import ValidationError

from config.loader import get_api_base_url, get_api_timeout, get_category_paths
from models.rules import (
    NotFound,
    Rule,
    RuleListFilters,
    RuleMetadata,
    RuleSearchFilters,
    utc_now,
)
from models.shared import (
    DEFAULT_CATEGORY_LISTS,
    ResultSource,
    RuleCategoryType,
    RuleOrigin,
)
from store.filters import apply_list_filters, apply_search
from store.local_replica import LocalReplicaStore
from utils.error_handler import LocalStoreFailure, TransportFailure, handle_transport_error

logger = structlog.get_logger(__name__)

_ID_ALPHABET = string.ascii_lowercase + string.digits


class RuleBackend(Protocol):
    """Operations RuleStore needs from any backend for a single category."""

    category: RuleCategoryType
    source: ResultSource

    async def save(self, metadata: RuleMetadata, rule_config: Any) -> Rule: ...

    async def list(self, filters: RuleListFilters) -> list[Rule]: ...

    async def get(self, rule_id: str) -> Union[Rule, NotFound]: ...

    async def update(self, rule_id: str, metadata: RuleMetadata, rule_config: Any) -> Union[Rule, NotFound]: ...

    async def delete(self, rule_id: str) -> Optional[NotFound]: ...

    async def mark_used(self, rule_id: str) -> Union[int, NotFound]: ...

    async def search(self, filters: RuleSearchFilters) -> list[Rule]: ...

    async def bulk_delete(self, rule_ids: Sequence[str]) -> tuple[int, list[str]]: ...

    async def categories(self) -> list[str]: ...


class RemoteRuleBackend:
    """HTTP client for one category's rule endpoints.

    Any non-2xx other than 404, connection error, timeout or undecodable body
    surfaces as TransportFailure. 404 is returned as NotFound where the
    operation targets a single id.
    """

    source = ResultSource.REMOTE

    def __init__(self, category: RuleCategoryType, client: httpx.AsyncClient, path: Optional[str] = None) -> None:
        self.category = category
        self._client = client
        self._path = (path or get_category_paths()[category.value]).rstrip("/")

    @staticmethod
    def create_client(base_url: Optional[str] = None, timeout: Optional[float] = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=(base_url or get_api_base_url()).rstrip("/"),
            timeout=timeout if timeout is not None else get_api_timeout(),
            headers={"Accept": "application/json"},
        )

    async def _request(
        self,
        method: str,
        suffix: str,
        *,
        json: Any = None,
        params: Optional[dict[str, str]] = None,
    ) -> Optional[httpx.Response]:
        """Send a request; None means 404."""
        url = f"{self._path}{suffix}"
        try:
            resp = await self._client.request(method, url, json=json, params=params)
        except httpx.HTTPError as e:
            raise handle_transport_error(e) from e

        logger.debug("remote_call", method=method, url=url, status=resp.status_code)

        if resp.status_code == 404:
            return None
        try:
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise handle_transport_error(e) from e
        return resp

    @staticmethod
    def _body(resp: httpx.Response) -> Any:
        try:
            return resp.json()
        except ValueError as e:
            raise handle_transport_error(e) from e

    def _parse_rule(self, data: Any) -> Rule:
        if not isinstance(data, dict):
            raise TransportFailure(details="Malformed rule payload", is_retryable=False)
        try:
            rule = Rule.from_record(data, self.category)
        except ValidationError as e:
            raise TransportFailure(details=f"Malformed rule payload: {e}"[:200], is_retryable=False) from e
        rule.origin = RuleOrigin.REMOTE
        return rule

    def _parse_rules(self, data: Any) -> list[Rule]:
        if isinstance(data, dict) and isinstance(data.get("rules"), list):
            data = data["rules"]
        if not isinstance(data, list):
            raise TransportFailure(details="Expected an array of rules", is_retryable=False)
        return [self._parse_rule(item) for item in data]

    async def save(self, metadata: RuleMetadata, rule_config: Any) -> Rule:
        payload = {"metadata": metadata.to_wire(self.category), "rule_config": rule_config}
        resp = await self._request("POST", "/save", json=payload)
        if resp is None:
            raise TransportFailure(details="Save endpoint not found", status_code=404, is_retryable=False)
        return self._parse_rule(self._body(resp))

    async def list(self, filters: RuleListFilters) -> list[Rule]:
        resp = await self._request("GET", "/list", params=filters.to_query_params())
        if resp is None:
            raise TransportFailure(details="List endpoint not found", status_code=404, is_retryable=False)
        return self._parse_rules(self._body(resp))

    async def get(self, rule_id: str) -> Union[Rule, NotFound]:
        resp = await self._request("GET", f"/{rule_id}")
        if resp is None:
            return NotFound(id=rule_id, source=self.source)
        return self._parse_rule(self._body(resp))

    async def update(self, rule_id: str, metadata: RuleMetadata, rule_config: Any) -> Union[Rule, NotFound]:
        payload = {"metadata": metadata.to_wire(self.category), "rule_config": rule_config}
        resp = await self._request("PUT", f"/{rule_id}", json=payload)
        if resp is None:
            return NotFound(id=rule_id, source=self.source)
        return self._parse_rule(self._body(resp))

    async def delete(self, rule_id: str) -> Optional[NotFound]:
        resp = await self._request("DELETE", f"/{rule_id}")
        if resp is None:
            return NotFound(id=rule_id, source=self.source)
        return None

    async def mark_used(self, rule_id: str) -> Union[int, NotFound]:
        resp = await self._request("POST", f"/{rule_id}/use")
        if resp is None:
            return NotFound(id=rule_id, source=self.source)
        body = self._body(resp)
        if not isinstance(body, dict) or not isinstance(body.get("usage_count"), int):
            raise TransportFailure(details="Missing usage_count in response", is_retryable=False)
        return body["usage_count"]

    async def search(self, filters: RuleSearchFilters) -> list[Rule]:
        resp = await self._request("POST", "/search", json=filters.to_wire())
        if resp is None:
            raise TransportFailure(details="Search endpoint not found", status_code=404, is_retryable=False)
        return self._parse_rules(self._body(resp))

    async def bulk_delete(self, rule_ids: Sequence[str]) -> tuple[int, list[str]]:
        resp = await self._request("POST", "/bulk-delete", json=list(rule_ids))
        if resp is None:
            raise TransportFailure(details="Bulk delete endpoint not found", status_code=404, is_retryable=False)
        body = self._body(resp)
        if not isinstance(body, dict):
            raise TransportFailure(details="Malformed bulk delete response", is_retryable=False)
        return int(body.get("deleted_count") or 0), list(body.get("not_found_ids") or [])

    async def categories(self) -> list[str]:
        resp = await self._request("GET", "/categories/list")
        if resp is None:
            raise TransportFailure(details="Categories endpoint not found", status_code=404, is_retryable=False)
        body = self._body(resp)
        if not isinstance(body, dict) or not isinstance(body.get("categories"), list):
            raise TransportFailure(details="Malformed categories response", is_retryable=False)
        return [str(c) for c in body["categories"]]


def generate_local_id(category: RuleCategoryType) -> str:
    """<type>_rule_<epoch_ms>_<9 base36 chars>"""
    suffix = "".join(random.choices(_ID_ALPHABET, k=9))
    return f"{category.value}_rule_{int(time.time() * 1000)}_{suffix}"


class LocalRuleBackend:
    """Rule operations against the LocalReplicaStore for one category.

    Methods are declared async so both backends share one contract; none of
    them suspends.
    """

    source = ResultSource.LOCAL

    def __init__(
        self,
        category: RuleCategoryType,
        replica: LocalReplicaStore,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Callable[[RuleCategoryType], str] = generate_local_id,
    ) -> None:
        self.category = category
        self._replica = replica
        self._clock = clock
        self._id_factory = id_factory
        self._key = replica.rules_key(category)

    def _parse(self, record: dict[str, Any]) -> Optional[Rule]:
        try:
            return Rule.from_record(record, self.category)
        except ValidationError as e:
            logger.warning(
                "replica_record_skipped",
                category=self.category.value,
                rule_id=record.get("id"),
                error=str(e)[:200],
            )
            return None

    def load_all(self) -> list[Rule]:
        rules = (self._parse(r) for r in self._replica.load(self.category))
        return [r for r in rules if r is not None]

    @staticmethod
    def _index_of(records: list[dict[str, Any]], rule_id: str) -> int:
        for i, record in enumerate(records):
            if record.get("id") == rule_id:
                return i
        return -1

    def build_rule(self, metadata: RuleMetadata, rule_config: Any) -> Rule:
        now = self._clock()
        wire = metadata.to_wire(self.category)
        return Rule(
            id=self._id_factory(self.category),
            category_type=self.category,
            name=wire["name"],
            description=wire["description"],
            category=wire["category"],
            tags=wire["tags"],
            template_id=wire["template_id"],
            template_name=wire["template_name"],
            rule_config=rule_config,
            usage_count=0,
            last_used_at=None,
            created_at=now,
            updated_at=now,
            version="1.0",
            origin=RuleOrigin.LOCAL_ONLY,
        )

    async def save(self, metadata: RuleMetadata, rule_config: Any) -> Rule:
        rule = self.build_rule(metadata, rule_config)
        self._replica.append(self.category, rule.to_record())
        logger.info("rule_saved_locally", category=self.category.value, rule_id=rule.id)
        return rule

    async def list(self, filters: RuleListFilters) -> list[Rule]:
        return apply_list_filters(self.load_all(), filters)

    async def get(self, rule_id: str) -> Union[Rule, NotFound]:
        for rule in self.load_all():
            if rule.id == rule_id:
                return rule
        return NotFound(id=rule_id, source=self.source)

    async def update(self, rule_id: str, metadata: RuleMetadata, rule_config: Any) -> Union[Rule, NotFound]:
        with self._replica.transaction(self._key) as records:
            idx = self._index_of(records, rule_id)
            if idx == -1:
                return NotFound(id=rule_id, source=self.source)
            current = self._parse(records[idx])
            if current is None:
                raise LocalStoreFailure(f"Replica record {rule_id} is unreadable")
            wire = metadata.to_wire(self.category)
            updated = current.model_copy(
                update={
                    "name": wire["name"],
                    "description": wire["description"],
                    "category": wire["category"],
                    "tags": wire["tags"],
                    "template_id": wire["template_id"],
                    "template_name": wire["template_name"],
                    "rule_config": rule_config,
                    "updated_at": self._clock(),
                    "origin": RuleOrigin.LOCAL_ONLY,
                }
            )
            records[idx] = updated.to_record()
        logger.info("rule_updated_locally", category=self.category.value, rule_id=rule_id)
        return updated

    async def delete(self, rule_id: str) -> Optional[NotFound]:
        with self._replica.transaction(self._key) as records:
            idx = self._index_of(records, rule_id)
            if idx == -1:
                return NotFound(id=rule_id, source=self.source)
            del records[idx]
        logger.info("rule_deleted_locally", category=self.category.value, rule_id=rule_id)
        return None

    async def mark_used(self, rule_id: str) -> Union[int, NotFound]:
        with self._replica.transaction(self._key) as records:
            idx = self._index_of(records, rule_id)
            if idx == -1:
                return NotFound(id=rule_id, source=self.source)
            record = records[idx]
            usage_count = int(record.get("usage_count") or 0) + 1
            record["usage_count"] = usage_count
            record["last_used_at"] = self._clock().isoformat()
            record["origin"] = RuleOrigin.LOCAL_ONLY.value
        return usage_count

    async def search(self, filters: RuleSearchFilters) -> list[Rule]:
        return apply_search(self.load_all(), filters)

    async def bulk_delete(self, rule_ids: Sequence[str]) -> tuple[int, list[str]]:
        deleted_count = 0
        not_found_ids: list[str] = []
        with self._replica.transaction(self._key) as records:
            for rule_id in rule_ids:
                idx = self._index_of(records, rule_id)
                if idx == -1:
                    not_found_ids.append(rule_id)
                else:
                    del records[idx]
                    deleted_count += 1
        return deleted_count, not_found_ids

    async def categories(self) -> list[str]:
        return list(DEFAULT_CATEGORY_LISTS[self.category])
