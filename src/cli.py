from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv

from metrics.cache import initialize_metrics_cache, shutdown_metrics_cache
from models.metrics import calculate_metrics
from models.rules import NotFound, Rule, RuleListFilters, RuleMetadata
from query.engine import RuleQueryEngine
from query.transfer import import_rules
from store.rule_store import RuleRepository
from utils.error_handler import RulesCoreError, exit_with_error


logger = logging.getLogger(__name__)

CATEGORY_CHOICES = ["delta", "reconciliation", "transformation"]


def _add_common_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--api-url",
        dest="api_url",
        default=os.getenv("RULES_API_URL", ""),
        help="Rules API base URL (default: RULES_API_URL or config)",
    )
    parser.add_argument(
        "--log-level",
        dest="log_level",
        default=os.getenv("RULES_LOG_LEVEL", "WARNING"),
        help="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    parser.add_argument(
        "--dotenv",
        dest="dotenv_path",
        default=".env",
        help="Path to .env file to load (default: .env at repo root)",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="rules-core", description="Manage rules and read process metrics")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("list", help="List rules with search, filter and sort")
    p.add_argument("--category", choices=CATEGORY_CHOICES, default="", help="One category (default: all)")
    p.add_argument("--search", default="", help="Case-insensitive search term")
    p.add_argument("--filter", dest="filter_by", default="all", help="all | recent | frequently_used | type:<T> | category:<C>")
    p.add_argument("--sort", dest="sort_field", default="updated_at", help="name | created_at | updated_at | usage_count | category")
    p.add_argument("--order", choices=["asc", "desc"], default="desc")
    p.add_argument("--template-id", dest="template_id", default=None)
    _add_common_options(p)

    p = sub.add_parser("get", help="Show one rule")
    p.add_argument("category", choices=CATEGORY_CHOICES)
    p.add_argument("rule_id")
    _add_common_options(p)

    p = sub.add_parser("save", help="Create a rule")
    p.add_argument("category", choices=CATEGORY_CHOICES)
    p.add_argument("--name", required=True)
    p.add_argument("--description", default="")
    p.add_argument("--rule-category", dest="rule_category", default="")
    p.add_argument("--tags", default="", help="Comma separated tags")
    p.add_argument("--template-id", dest="template_id", default="")
    p.add_argument("--template-name", dest="template_name", default="")
    p.add_argument("--config-file", dest="config_file", default="", help="JSON file with the rule configuration")
    _add_common_options(p)

    p = sub.add_parser("delete", help="Delete one or more rules")
    p.add_argument("category", choices=CATEGORY_CHOICES)
    p.add_argument("rule_ids", nargs="+")
    _add_common_options(p)

    p = sub.add_parser("use", help="Record one use of a rule")
    p.add_argument("category", choices=CATEGORY_CHOICES)
    p.add_argument("rule_id")
    _add_common_options(p)

    p = sub.add_parser("stats", help="Rule statistics")
    p.add_argument("--category", choices=CATEGORY_CHOICES, default="")
    _add_common_options(p)

    p = sub.add_parser("export", help="Export a rule view as JSON")
    p.add_argument("--category", choices=CATEGORY_CHOICES, default="")
    p.add_argument("--search", default="")
    p.add_argument("--filter", dest="filter_by", default="all")
    p.add_argument("--output", dest="output_path", default="", help="Output file (default: rules_export_<date>.json)")
    _add_common_options(p)

    p = sub.add_parser("import", help="Import rules from an export file")
    p.add_argument("category", choices=CATEGORY_CHOICES)
    p.add_argument("input_path")
    _add_common_options(p)

    p = sub.add_parser("metrics", help="Show the process metrics dashboard")
    p.add_argument("--user-id", dest="user_id", default=None)
    p.add_argument("--force", action="store_true", help="Bypass the cache")
    _add_common_options(p)

    return parser


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _print_warning(warning: Optional[str]) -> None:
    if warning:
        print(f"warning: {warning}", file=sys.stderr)


async def _load_rules(repo: RuleRepository, category: str, filters: RuleListFilters) -> list[Rule]:
    if category:
        result = await repo.store(category).list(filters)
        _print_warning(result.warning)
        return result.rules
    combined = await repo.list_all(filters)
    if combined.partial_failure:
        _print_warning("some categories could not be loaded from the local replica")
    return combined.rules


async def run_list(args: argparse.Namespace, repo: RuleRepository) -> int:
    rules = await _load_rules(repo, args.category, RuleListFilters(template_id=args.template_id))
    view = RuleQueryEngine().view(rules, args.search, args.filter_by, args.sort_field, args.order)
    _print_json([rule.to_record() for rule in view])
    return 0


async def run_get(args: argparse.Namespace, repo: RuleRepository) -> int:
    result = await repo.store(args.category).get(args.rule_id)
    if isinstance(result, NotFound):
        print(f"Rule not found: {args.rule_id}", file=sys.stderr)
        return 1
    _print_json(result.rule.to_record())
    return 0


async def run_save(args: argparse.Namespace, repo: RuleRepository) -> int:
    rule_config: Any = {}
    if args.config_file:
        rule_config = json.loads(Path(args.config_file).read_text(encoding="utf-8"))
    metadata = RuleMetadata(
        name=args.name,
        description=args.description,
        category=args.rule_category,
        tags=[t.strip() for t in args.tags.split(",") if t.strip()],
        template_id=args.template_id,
        template_name=args.template_name,
    )
    result = await repo.store(args.category).save(metadata, rule_config)
    _print_warning(result.warning)
    _print_json({"id": result.rule.id, "source": result.source.value})
    return 0


async def run_delete(args: argparse.Namespace, repo: RuleRepository) -> int:
    store = repo.store(args.category)
    if len(args.rule_ids) == 1:
        result = await store.delete(args.rule_ids[0])
        if isinstance(result, NotFound):
            print(f"Rule not found: {result.id}", file=sys.stderr)
            return 1
        _print_json({"deleted": result.id, "source": result.source.value})
        return 0

    bulk = await store.bulk_delete(args.rule_ids)
    _print_json(bulk.model_dump(mode="json"))
    return 0


async def run_use(args: argparse.Namespace, repo: RuleRepository) -> int:
    result = await repo.store(args.category).mark_used(args.rule_id)
    if isinstance(result, NotFound):
        print(f"Rule not found: {args.rule_id}", file=sys.stderr)
        return 1
    _print_json({"id": result.id, "usage_count": result.usage_count, "source": result.source.value})
    return 0


async def run_stats(args: argparse.Namespace, repo: RuleRepository) -> int:
    rules = await _load_rules(repo, args.category, RuleListFilters())
    stats = RuleQueryEngine().statistics(rules)
    payload = stats.model_dump(mode="json", exclude={"most_used"})
    payload["most_used"] = stats.most_used.name if stats.most_used else None
    _print_json(payload)
    return 0


async def run_export(args: argparse.Namespace, repo: RuleRepository) -> int:
    engine = RuleQueryEngine()
    rules = await _load_rules(repo, args.category, RuleListFilters())
    view = engine.filter(rules, args.search, args.filter_by)
    output_file = Path(args.output_path or engine.export_filename())
    output_file.parent.mkdir(parents=True, exist_ok=True)
    output_file.write_bytes(engine.export(view))
    logger.info("[export] wrote=%s rules=%s", str(output_file), len(view))
    print(str(output_file))
    return 0


async def run_import(args: argparse.Namespace, repo: RuleRepository) -> int:
    payload = Path(args.input_path).read_bytes()
    report = await import_rules(repo.store(args.category), payload)
    _print_json(report.model_dump())
    return 0 if report.failed == 0 else 1


async def run_metrics(args: argparse.Namespace) -> int:
    cache = await initialize_metrics_cache()
    try:
        dashboard = await cache.get_dashboard(args.user_id, force_refresh=bool(args.force))
    finally:
        await shutdown_metrics_cache()
    payload = dashboard.model_dump(mode="json")
    payload["derived"] = calculate_metrics(dashboard.summary).model_dump()
    _print_json(payload)
    return 0


_RULE_COMMANDS = {
    "list": run_list,
    "get": run_get,
    "save": run_save,
    "delete": run_delete,
    "use": run_use,
    "stats": run_stats,
    "export": run_export,
    "import": run_import,
}


async def run(args: argparse.Namespace) -> int:
    if args.command == "metrics":
        return await run_metrics(args)
    async with RuleRepository.from_env(args.api_url or None) as repo:
        return await _RULE_COMMANDS[args.command](args, repo)


def main(argv: Optional[list[str]] = None) -> int:
    argv_list = list(argv) if argv is not None else sys.argv[1:]

    parser = build_parser()
    args = parser.parse_args(argv_list)

    logging.basicConfig(level=getattr(logging, str(args.log_level).upper(), logging.WARNING))

    # Reduce noisy transport logs; users can still raise verbosity with --log-level DEBUG.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    load_dotenv(args.dotenv_path)
    if args.api_url:
        os.environ["RULES_API_URL"] = args.api_url

    try:
        return asyncio.run(run(args))
    except RulesCoreError as e:
        return exit_with_error(e, context=args.command)
    except (OSError, json.JSONDecodeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
