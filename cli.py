#!/usr/bin/env python3
"""
Oracle — Command Line Interface
Scan screenshots, ask the Oracle, and manage linked gateway accounts.

Usage:
    python cli.py scan screenshots/attila.png --kind hero --save
    python cli.py ask "Quelle équipe pour le siège ?" --context team
    python cli.py accounts list
    python cli.py accounts add --name "Main" --token sk-ant-...
    python cli.py accounts switch acct_1700000000000_abc123xyz
    python cli.py advice team pvp
    python cli.py status
"""
import argparse
import json
import logging
import mimetypes
import sys
from pathlib import Path

from account_client import AccountServiceClient
from config.settings import config
from memory.account_ledger import AccountLedger
from memory.game_store import GameStore
from memory.kv_store import StorageError, get_store
from models.accounts import format_tokens, token_metrics, token_status
from orchestrator.assistant import OracleAssistant, TEAM_MODES
from orchestrator.gateway import GatewayError, encode_image
from orchestrator.normalizer import AUTO, ENTITY_KINDS


def setup_logging(debug: bool = False):
    level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _build(args):
    store = get_store(args.storage)
    ledger = AccountLedger(store, AccountServiceClient())
    game_store = GameStore(store)
    assistant = OracleAssistant(game_store=game_store, ledger=ledger)
    return ledger, game_store, assistant


def cmd_scan(args):
    """Analyze one screenshot."""
    path = Path(args.image)
    if not path.is_file():
        print(f"❌ No such file: {path}")
        return 1
    media_type = mimetypes.guess_type(path.name)[0] or "image/png"

    _, _, assistant = _build(args)
    result = assistant.analyze_screenshot(encode_image(path.read_bytes(), media_type), args.kind)

    print("\n" + "=" * 60)
    print(f"SCAN — {path.name}")
    print("=" * 60)
    if not result.succeeded:
        print(f"❌ Analysis failed: {result.raw_response}")
        return 1

    print(f"Type: {result.entity_kind} | confidence {result.confidence:.2f} | via {result.strategy}")
    print(json.dumps(result.payload, indent=2, ensure_ascii=False))
    if result.incomplete:
        print(f"\n⚠️  Incomplete — missing: {', '.join(result.missing_elements) or '?'}")

    if args.save:
        entity = assistant.apply_extraction(result)
        if entity:
            print(f"\n✅ Saved {result.entity_kind}: {getattr(entity, 'name', '')}")
        else:
            print("\n⬜ Nothing to save for this result")
    return 0


def cmd_ask(args):
    """Ask the Oracle a question."""
    _, _, assistant = _build(args)
    try:
        answer = assistant.chat(args.question, context=args.context, model=args.model)
    except GatewayError as e:
        print(f"❌ Gateway error: {e}")
        return 1
    print("\n" + "=" * 60)
    print("ORACLE")
    print("=" * 60)
    print(answer)
    return 0


def _print_account(account):
    metrics = token_metrics(account)
    marker = "●" if account.is_active else " "
    print(f"{marker} {account.id}  {account.display_name:<24} "
          f"{format_tokens(metrics.used)}/{format_tokens(metrics.limit)} "
          f"({metrics.percentage:.0f}%, {token_status(metrics.percentage)})")


def cmd_accounts(args):
    """Manage linked gateway accounts."""
    ledger, _, _ = _build(args)

    if args.action == "list":
        accounts = ledger.list()
        if not accounts:
            print("No linked accounts.")
        for account in accounts:
            _print_account(account)
        return 0

    if args.action == "add":
        account = ledger.add(args.name, args.user_id, args.token)
        print("✅ Added and activated:")
        _print_account(account)
        return 0

    if not args.id and args.action != "refresh":
        print(f"❌ accounts {args.action} needs an account id")
        return 1

    if args.action == "switch":
        ok = ledger.set_active(args.id)
    elif args.action == "remove":
        ok = ledger.remove(args.id)
    else:
        account = ledger.refresh(args.id)
        if account is None:
            print("⬜ Account service unreachable — keeping last-known values")
            return 1
        _print_account(account)
        return 0

    print("✅ Done" if ok else f"❌ Unknown account {args.id}")
    return 0 if ok else 1


def cmd_advice(args):
    """Quick strategy actions."""
    _, _, assistant = _build(args)
    try:
        if args.topic == "hero":
            answer = assistant.hero_advice(args.target)
            if answer is None:
                print(f"❌ Unknown hero {args.target}")
                return 1
        elif args.topic == "team":
            answer = assistant.team_suggestion(args.target or "pvp")
        else:
            answer = assistant.upgrade_priorities()
    except GatewayError as e:
        print(f"❌ Gateway error: {e}")
        return 1
    except ValueError as e:
        print(f"❌ {e}")
        return 1
    print(answer)
    return 0


def cmd_status(args):
    """Check Oracle system status."""
    print("Oracle — System Status")
    print("=" * 40)

    print(f"{'✅' if config.gateway.api_key else '⬜'} Gateway key: "
          f"{'configured' if config.gateway.api_key else 'not set'} (model={config.gateway.default_model})")
    print(f"{'✅' if config.accounts.base_url else '⬜'} Account service: {config.accounts.base_url or 'not set'}")

    try:
        ledger, game_store, _ = _build(args)
        print(f"✅ Storage ({args.storage or config.storage.backend}): reachable")
        active = ledger.get_active()
        print(f"   Linked accounts: {len(ledger.list())} | active: {active.display_name if active else '—'}")
        print(f"   Heroes: {len(game_store.get_heroes())} | Equipment: {len(game_store.get_equipment())} "
              f"| Buildings: {len(game_store.get_buildings())}")
    except StorageError as e:
        print(f"❌ Storage: {e}")

    knowledge = Path(config.knowledge.strategy_path)
    print(f"{'✅' if knowledge.is_file() else '⬜'} Strategy knowledge: {knowledge}")
    print(f"\nDebug mode: {config.debug}")
    return 0


def main():
    parser = argparse.ArgumentParser(description="Oracle — Age of Empires Mobile strategy companion")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--storage", choices=["postgres", "memory"], help="Override ORACLE_STORAGE")
    subparsers = parser.add_subparsers(dest="command")

    scan_parser = subparsers.add_parser("scan", help="Extract game data from a screenshot")
    scan_parser.add_argument("image", type=str, help="Path to the screenshot")
    scan_parser.add_argument("--kind", choices=[AUTO, *[k for k in ENTITY_KINDS if k != "unknown"]],
                             default=AUTO, help="Expected content")
    scan_parser.add_argument("--save", action="store_true", help="Store the extracted entity")

    ask_parser = subparsers.add_parser("ask", help="Ask the Oracle a question")
    ask_parser.add_argument("question", type=str, help="Your question")
    ask_parser.add_argument("--context", default="general",
                            choices=["general", "hero", "equipment", "building", "team"])
    ask_parser.add_argument("--model", type=str, help="Model override")

    acc_parser = subparsers.add_parser("accounts", help="Manage linked accounts")
    acc_parser.add_argument("action", choices=["list", "add", "switch", "remove", "refresh"])
    acc_parser.add_argument("id", nargs="?", help="Account id (switch/remove/refresh)")
    acc_parser.add_argument("--name", type=str, help="Display name (add)")
    acc_parser.add_argument("--user-id", type=str, help="External user id (add)")
    acc_parser.add_argument("--token", type=str, help="Gateway API key for this account (add)")

    adv_parser = subparsers.add_parser("advice", help="Quick strategy actions")
    adv_parser.add_argument("topic", choices=["hero", "team", "priorities"])
    adv_parser.add_argument("target", nargs="?", help=f"Hero id, or team mode ({'|'.join(TEAM_MODES)})")

    subparsers.add_parser("status", help="Check system status")

    args = parser.parse_args()
    setup_logging(args.debug or config.debug)

    commands = {
        "scan": cmd_scan,
        "ask": cmd_ask,
        "accounts": cmd_accounts,
        "advice": cmd_advice,
        "status": cmd_status,
    }
    if args.command not in commands:
        parser.print_help()
        return 0
    return commands[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
