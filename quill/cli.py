"""
Quill CLI - Command-line interface for the engine.

Usage:
    quill eval <mode> <expression>    Evaluate a condition, text or block
    quill apply <effects>             Apply an effect list, print the changes
    quill scan <content_file>         List dynamically created quality ids

`eval` and `apply` read the character state from `--state` (an
EngineSnapshot JSON file) and the definitions and storylets from `--content`
(a ContentPayload JSON file). Both are optional.
"""

import argparse
import json
import logging
import sys

from .config import Settings
from .logging_config import setup_logging

logger = logging.getLogger(__name__)


def main(argv=None):
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Quill - storylet rule-language engine",
        prog="quill",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Eval command
    eval_parser = subparsers.add_parser("eval", help="Evaluate an expression")
    eval_parser.add_argument("mode", choices=["condition", "text", "block"], help="Grammar to read with")
    eval_parser.add_argument("expression", help="Expression or template")
    eval_parser.add_argument("--self", dest="self_id", help="Quality bound to $.")
    _add_snapshot_arguments(eval_parser)

    # Apply command
    apply_parser = subparsers.add_parser("apply", help="Apply an effect list")
    apply_parser.add_argument("effects", help="Comma-separated effect statements")
    _add_snapshot_arguments(apply_parser)

    # Scan command
    scan_parser = subparsers.add_parser("scan", help="List dynamically created quality ids")
    scan_parser.add_argument("content_file", help="Path to a content JSON file")

    args = parser.parse_args(argv)
    # Results go to stdout, so logs go to stderr
    setup_logging(args.verbose, stream=sys.stderr)

    if args.command == "eval":
        return cmd_eval(args)
    elif args.command == "apply":
        return cmd_apply(args)
    elif args.command == "scan":
        return cmd_scan(args)
    else:
        parser.print_help()
        return 1


def _add_snapshot_arguments(subparser):
    subparser.add_argument("--state", help="Path to a snapshot JSON file")
    subparser.add_argument("--content", help="Path to a content JSON file (overrides the snapshot's)")
    subparser.add_argument("--seed", type=int, help="Seed for rolls and random picks")


def _read_json(path):
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def _load_snapshot(args):
    """Build an EngineSnapshot from the --state, --content and --seed flags."""
    from pydantic import ValidationError
    from .api.schemas import ContentPayload, EngineSnapshot

    try:
        snapshot = EngineSnapshot.model_validate(_read_json(args.state)) if args.state else EngineSnapshot()
        if args.content:
            snapshot.content = ContentPayload.model_validate(_read_json(args.content))
    except FileNotFoundError as e:
        print(f"Error: File not found: {e.filename}")
        return None
    except (json.JSONDecodeError, ValidationError) as e:
        print(f"Error: Invalid input: {e}")
        return None
    if args.seed is not None:
        snapshot.seed = args.seed
    return snapshot


def cmd_eval(args):
    """Evaluate an expression and print the result."""
    from .api.schemas import EvaluateRequest
    from .api.service import ConsoleService

    snapshot = _load_snapshot(args)
    if snapshot is None:
        return 1

    service = ConsoleService(settings=Settings.from_env())
    response = service.evaluate(EvaluateRequest(
        snapshot=snapshot,
        mode=args.mode,
        expression=args.expression,
        self_id=args.self_id,
    ))

    result = response.result
    print(str(result).lower() if isinstance(result, bool) else result)
    for error in response.errors:
        print(f"  ! {error}", file=sys.stderr)
    return 0


def cmd_apply(args):
    """Apply effects and print the change records as JSON."""
    from .api.schemas import ApplyEffectsRequest
    from .api.service import ConsoleService

    snapshot = _load_snapshot(args)
    if snapshot is None:
        return 1

    service = ConsoleService(settings=Settings.from_env())
    response = service.apply_effects(ApplyEffectsRequest(snapshot=snapshot, effects=args.effects))

    print(json.dumps(response.model_dump(mode="json"), indent=2))
    return 1 if response.errors else 0


def cmd_scan(args):
    """Print one dynamically created quality id per line."""
    from pydantic import ValidationError
    from .api.schemas import ContentPayload
    from .engine_core.content import scan_dynamic_ids

    try:
        content = ContentPayload.model_validate(_read_json(args.content_file))
    except FileNotFoundError:
        print(f"Error: File not found: {args.content_file}")
        return 1
    except (json.JSONDecodeError, ValidationError) as e:
        print(f"Error: Invalid content file: {e}")
        return 1

    ids = scan_dynamic_ids(content.to_context())
    logger.debug("Scanned %d storylets", len(content.storylets))
    for qid in ids:
        print(qid)
    return 0


if __name__ == "__main__":
    sys.exit(main())
