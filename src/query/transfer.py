"""Re-import of export payloads produced by RuleQueryEngine.export."""
from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, Union

import structlog

from models.rules import ImportReport, RuleMetadata
from utils.error_handler import ValidationFailure

if TYPE_CHECKING:
    from store.rule_store import RuleStore

logger = structlog.get_logger(__name__)

IMPORTED_SUFFIX = " (Imported)"


def parse_export(payload: Union[bytes, str, dict[str, Any]]) -> list[dict[str, Any]]:
    """Rule records from an export payload; raises ValidationFailure on a bad shape."""
    if isinstance(payload, (bytes, str)):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as e:
            raise ValidationFailure([f"Export file is not valid JSON: {e}"]) from e

    rules = payload.get("rules") if isinstance(payload, dict) else None
    if not isinstance(rules, list):
        raise ValidationFailure(["Invalid rule file format: missing 'rules' array"])
    return [r for r in rules if isinstance(r, dict)]


async def import_rules(store: "RuleStore", payload: Union[bytes, str, dict[str, Any]]) -> ImportReport:
    """Save every exported rule as a new rule in store, name suffixed " (Imported)".

    Each rule gets a fresh id from whichever path saves it; one failing rule
    does not stop the rest.
    """
    report = ImportReport()
    for record in parse_export(payload):
        name = str(record.get("name") or "")
        try:
            metadata = RuleMetadata(
                name=f"{name}{IMPORTED_SUFFIX}",
                description=record.get("description"),
                category=record.get("category"),
                tags=record.get("tags"),
                template_id=record.get("template_id"),
                template_name=record.get("template_name"),
            )
            await store.save(metadata, record.get("rule_config"))
            report.successful += 1
        except ValidationFailure as e:
            report.failed += 1
            report.errors.append(f"{name}: {e.details}")
        except ValueError as e:
            report.failed += 1
            report.errors.append(f"{name}: {e}")

    logger.info(
        "rules_imported",
        category=store.category.value,
        successful=report.successful,
        failed=report.failed,
    )
    return report
