from __future__ import annotations

import argparse
import logging
import sys
from signal import SIGINT, signal
from typing import TYPE_CHECKING

from dotenv import load_dotenv

from eramerge.app import cache_stats, invalidate_cache, purge_cache, run_temporal_merge
from eramerge.config import configure_logging
from eramerge.domain.merge import (
    DeleteMode,
    MergeAbortedError,
    MergeConfigurationError,
    MergeMode,
    MergeRequest,
)

if TYPE_CHECKING:
    from collections.abc import Sequence
    from types import FrameType

    from eramerge.domain.merge import MergeResult

log = logging.getLogger(__name__)


def _columns(value: str) -> tuple[str, ...]:
    columns = tuple(part.strip() for part in value.split(",") if part.strip())
    if not columns:
        raise argparse.ArgumentTypeError("Expected a comma-separated list of column names")
    return columns


def _parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Merge time-versioned rows into temporal tables")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    merge = subparsers.add_parser("merge", help="Merge a source table into a target table")
    merge.add_argument("--target", required=True, help="Target temporal table")
    merge.add_argument("--source", required=True, help="Source table holding the batch")
    merge.add_argument(
        "--identity",
        type=_columns,
        default=(),
        help="Comma-separated identity columns of the target",
    )
    merge.add_argument(
        "--natural-key",
        type=_columns,
        action="append",
        default=[],
        help="Comma-separated natural key; repeat to try several keys in order",
    )
    merge.add_argument(
        "--ephemeral",
        type=_columns,
        default=(),
        help="Comma-separated columns excluded from change detection",
    )
    merge.add_argument(
        "--mode",
        choices=[mode.value for mode in MergeMode],
        default=MergeMode.ENTITY_PATCH.value,
        help="Merge mode (default: %(default)s)",
    )
    merge.add_argument(
        "--delete-mode",
        choices=[mode.value for mode in DeleteMode],
        default=DeleteMode.NONE.value,
        help="What to delete from the target (default: %(default)s)",
    )
    merge.add_argument("--era", default="valid", help="Era name (default: %(default)s)")
    merge.add_argument(
        "--row-id-column",
        default="row_id",
        help="Source column identifying each row (default: %(default)s)",
    )
    merge.add_argument("--founding-id-column", help="Source column grouping new entities")
    merge.add_argument(
        "--update-source-with-identity",
        action="store_true",
        help="Write resolved identities back into the source table",
    )
    merge.add_argument("--feedback-status-column", help="Source column receiving row status")
    merge.add_argument("--feedback-error-column", help="Source column receiving row errors")
    merge.add_argument(
        "--atomic",
        action="store_true",
        help="Roll back the whole batch when any row fails",
    )

    cache = subparsers.add_parser("cache", help="Inspect and maintain the plan cache")
    cache_sub = cache.add_subparsers(dest="cache_command", required=True)
    cache_sub.add_parser("stats", help="Show plan cache statistics")
    invalidate = cache_sub.add_parser("invalidate", help="Drop cached templates")
    invalidate.add_argument("--target", help="Only drop templates of this target table")
    cache_sub.add_parser("purge", help="Evict stale and excess templates")

    return parser.parse_args(list(argv))


def _build_request(args: argparse.Namespace) -> MergeRequest:
    feedback_status_column = args.feedback_status_column
    return MergeRequest(
        target=args.target,
        source=args.source,
        identity_columns=args.identity,
        natural_key_sets=tuple(args.natural_key),
        ephemeral_columns=args.ephemeral,
        mode=MergeMode(args.mode),
        delete_mode=DeleteMode(args.delete_mode),
        era_name=args.era,
        row_id_column=args.row_id_column,
        founding_id_column=args.founding_id_column,
        update_source_with_identity=args.update_source_with_identity,
        update_source_with_feedback=feedback_status_column is not None,
        feedback_status_column=feedback_status_column,
        feedback_error_column=args.feedback_error_column,
        atomic=args.atomic,
    )


def _log_result(result: MergeResult) -> None:
    log.info(
        "Merge finished: %s",
        ", ".join(f"{status.value}={count}" for status, count in result.summary().items())
        or "no source rows",
    )
    for record in result.feedback:
        if record.error_message:
            log.warning("Row %s: %s", record.row_id, record.error_message)


def main(argv: Sequence[str] | None = None) -> None:
    """Main application entry point."""
    args_list = list(argv) if argv is not None else list(sys.argv[1:])
    parsed_args: argparse.Namespace
    try:
        parsed_args = _parse_args(args_list)
        configure_logging(level=logging.DEBUG if parsed_args.verbose else logging.INFO)
        request = _build_request(parsed_args) if parsed_args.command == "merge" else None
    except MergeConfigurationError:
        log.exception("CLI validation error")
        sys.exit(2)

    try:
        if request is not None:
            _log_result(run_temporal_merge(request))
        elif parsed_args.cache_command == "stats":
            stats = cache_stats()
            log.info(
                "Plan cache: entries=%s, oldest=%s, newest=%s, most_used=%s, least_used=%s",
                stats.total_entries,
                stats.oldest_entry,
                stats.newest_entry,
                stats.most_used,
                stats.least_used,
            )
        elif parsed_args.cache_command == "invalidate":
            removed = invalidate_cache(parsed_args.target)
            log.info("Invalidated %d cached templates", removed)
        elif parsed_args.cache_command == "purge":
            purge_cache()
        else:
            raise ValueError(f"Unsupported command: {parsed_args.command}")  # noqa: TRY301
    except MergeAbortedError as exc:
        log.error("%s", exc)  # noqa: TRY400
        _log_result(exc.result)
        sys.exit(1)
    except MergeConfigurationError:
        log.exception("Merge configuration error")
        sys.exit(2)
    except Exception:
        log.exception("Fatal error during merge")
        sys.exit(1)


def sigint_handler(_signal_received: int, _frame: FrameType | None) -> None:
    """Handle SIGINT (Ctrl+C) gracefully."""
    log.info("Closed by user (Ctrl+C)")
    sys.exit(0)


def run() -> None:
    load_dotenv()
    signal(SIGINT, sigint_handler)
    main()


if __name__ == "__main__":
    run()
