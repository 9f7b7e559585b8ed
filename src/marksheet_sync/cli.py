from __future__ import annotations

import argparse
import json
import logging
import os
import time
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from .config import AppConfig, load_config
from .errors import TransportError
from .extraction.engine import extract_records
from .extraction.rules import ExtractionRules
from .extraction.snapshot import load_snapshot
from .logging_config import configure_logging
from .models import ExtractionResult
from .persistence.store import MarksheetStore
from .persistence.writer import FallbackIdentifierPolicy, NullToZeroAtPersistence, to_record
from .pipeline import MarksheetPipeline
from .portal.cookies import CookieJar
from .portal.driver import open_portal_driver
from .portal.session import SessionController
from .util.debug_bundle import create_debug_bundle


logger = logging.getLogger("marksheet_sync")


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="marksheet-sync")
    p.add_argument(
        "--env-file",
        default=".env",
        help="Path to a dotenv file (default: .env). If missing, env vars must already be set.",
    )

    sub = p.add_subparsers(dest="cmd", required=True)

    scrape = sub.add_parser("scrape", help="Log into the portal, extract the marksheet and store it")
    scrape.add_argument("--config", default="config.yaml", help="Path to YAML config (default: config.yaml)")
    scrape.add_argument("--dry-run", action="store_true", help="Extract and log what would be saved; do not write")
    scrape.add_argument("--headful", action="store_true", help="Run browser headful (needed for manual challenges)")
    scrape.add_argument(
        "--fresh-session",
        action="store_true",
        help="Discard stored cookies and log in from scratch. Helpful for weird redirects.",
    )
    scrape.add_argument("--slowmo-ms", type=int, default=None, help="Playwright slow motion in milliseconds (debug).")
    scrape.add_argument("--step-debug", action="store_true", help="Save step-by-step screenshots under the debug dir.")

    check = sub.add_parser("check-session", help="Only check whether the stored session is still valid")
    check.add_argument("--config", default="config.yaml", help="Path to YAML config (default: config.yaml)")
    check.add_argument("--headful", action="store_true", help="Run browser headful (debug)")

    list_records = sub.add_parser("list-records", help="Print stored records as JSON")
    list_records.add_argument(
        "--db",
        default=None,
        help="Path to the records DB (default: STATE_DB_PATH or data/marksheet.db)",
    )
    list_records.add_argument("--student-id", default=None, help="Only records for this student id")

    parse = sub.add_parser(
        "parse-snapshot",
        help="Run extraction offline over a saved document snapshot (e.g. data/debug/records_snapshot.json)",
    )
    parse.add_argument("--file", required=True, help="Path to a document snapshot JSON file")
    parse.add_argument(
        "--config",
        default=None,
        help="Optional YAML config; its 'extraction' section overrides the default rules",
    )

    return p


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    env_path = Path(args.env_file)
    if env_path.exists():
        load_dotenv(env_path)

    # Default logging: can be overridden once config is loaded.
    configure_logging(level=os.getenv("LOG_LEVEL", "INFO"))

    if args.cmd == "scrape":
        cfg = load_config(args.config)
        configure_logging(level=cfg.logging.level, file_path=cfg.logging.file_path, secrets=[cfg.portal.password])
        if args.headful:
            cfg.browser.headless = False
        if args.slowmo_ms is not None:
            cfg.browser.slow_mo_ms = args.slowmo_ms
        if args.step_debug:
            cfg.browser.step_debug = True
        return _scrape(cfg, dry_run=args.dry_run, fresh_session=args.fresh_session)

    if args.cmd == "check-session":
        cfg = load_config(args.config)
        configure_logging(level=cfg.logging.level, file_path=cfg.logging.file_path, secrets=[cfg.portal.password])
        if args.headful:
            cfg.browser.headless = False
        valid = _check_session(cfg)
        print("Valid" if valid else "Invalid")
        return 0 if valid else 1

    if args.cmd == "list-records":
        db_path = args.db or os.getenv("STATE_DB_PATH", "data/marksheet.db")
        if not Path(db_path).exists():
            print(f"No records DB at {db_path}")
            return 1
        store = MarksheetStore(db_path)
        try:
            records = store.list_records(args.student_id)
        finally:
            store.close()
        print(json.dumps([r.model_dump() for r in records], indent=2))
        return 0

    if args.cmd == "parse-snapshot":
        rules = load_config(args.config).extraction if args.config else ExtractionRules()
        snapshot = load_snapshot(args.file)
        result = extract_records(snapshot, rules)
        print(result.model_dump_json(indent=2))
        return 0

    raise AssertionError("Unhandled command")


def _scrape(cfg: AppConfig, *, dry_run: bool, fresh_session: bool) -> int:
    logger.info("Starting scrape (dry_run=%s headless=%s)", dry_run, cfg.browser.headless)
    t0 = time.time()

    jar = CookieJar(cfg.browser.cookies_path)
    if fresh_session:
        logger.info("Fresh session requested; discarding stored cookies.")
        jar.discard()

    store = None if dry_run else MarksheetStore(cfg.state.db_path)
    try:
        with open_portal_driver(
            headless=cfg.browser.headless,
            slow_mo_ms=cfg.browser.slow_mo_ms,
            user_agent=cfg.browser.user_agent,
            debug_dir=cfg.browser.debug_dir,
            step_debug=cfg.browser.step_debug,
            default_timeout_ms=cfg.timing.navigation_timeout_ms * 3,
        ) as driver:
            pipeline = MarksheetPipeline(driver, cfg, store=store, cookie_jar=jar, dry_run=dry_run)
            outcome = pipeline.run()
            if dry_run and pipeline.result is not None:
                _log_dry_run(cfg, pipeline.result)
    except Exception:
        _write_debug_bundle(cfg)
        raise
    finally:
        if store is not None:
            store.disconnect()

    logger.info(
        "Run finished (ok=%s stage=%s groups=%d courses=%d degraded=%s seconds=%.2f)",
        outcome.ok,
        outcome.stage.value,
        outcome.groups_count,
        outcome.courses_count,
        outcome.degraded,
        time.time() - t0,
    )
    print(outcome.model_dump_json(indent=2))
    if not outcome.ok:
        _write_debug_bundle(cfg, outcome.model_dump(mode="json"))
        return 1
    return 0


def _check_session(cfg: AppConfig) -> bool:
    jar = CookieJar(cfg.browser.cookies_path)
    with open_portal_driver(
        headless=cfg.browser.headless,
        slow_mo_ms=cfg.browser.slow_mo_ms,
        user_agent=cfg.browser.user_agent,
        debug_dir=cfg.browser.debug_dir,
    ) as driver:
        cookies = jar.load()
        if cookies:
            driver.set_cookies(cookies)
        controller = SessionController(
            driver,
            portal=cfg.portal,
            timing=cfg.timing,
            headless=cfg.browser.headless,
        )
        try:
            return controller.check_session()
        except TransportError as e:
            logger.error("Session check failed: %s", e)
            return False


def _log_dry_run(cfg: AppConfig, result: ExtractionResult) -> None:
    ids = FallbackIdentifierPolicy(
        fallback_id=cfg.persistence.fallback_student_id,
        not_available_values=cfg.persistence.not_available_values,
    )
    numbers = NullToZeroAtPersistence(default=cfg.persistence.null_numeric_default)
    student_uuid = ids.resolve(result.student)
    logger.info("[DRY RUN] Student: %s", result.student.model_dump())
    for group in result.groups:
        for course in group.courses:
            rec = to_record(
                course,
                student_uuid=student_uuid,
                group_title=group.title,
                numbers=numbers,
                placeholder=cfg.persistence.placeholder_text,
            )
            logger.info("[DRY RUN] Would save: %s", rec.model_dump())


def _write_debug_bundle(cfg: AppConfig, summary: Optional[dict] = None) -> None:
    # Auto-bundle debug artifacts + log for easy sharing.
    try:
        bundle = create_debug_bundle(
            debug_dir=cfg.browser.debug_dir,
            log_file=cfg.logging.file_path,
            out_dir=str(Path(cfg.browser.debug_dir).parent),
            label="scrape",
            summary=summary,
        )
        logger.error("Wrote debug bundle: %s", bundle)
    except OSError:
        logger.debug("Failed to create debug bundle.", exc_info=True)
