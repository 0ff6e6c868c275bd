#!/usr/bin/env python3
"""
Channel console from the shell - pair a village's WhatsApp number, check its
status, and list live chat conversations.

Run (from the project root):
    python scripts/pair_channel.py status desa-sukamaju
    python scripts/pair_channel.py pair desa-sukamaju --qr-file qr.png
    python scripts/pair_channel.py conversations desa-sukamaju --filter takeover

Commands:
    status, pair, disconnect, delete, conversations

BACKEND_BASE_URL and BACKEND_API_TOKEN are read from the environment or .env.
"""
import sys
import asyncio
import argparse
import base64
import binascii
from pathlib import Path

# project root on sys.path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))


class Colors:
    """Terminal colors"""
    GREEN = "\033[92m"
    RED = "\033[91m"
    YELLOW = "\033[93m"
    BLUE = "\033[94m"
    RESET = "\033[0m"
    BOLD = "\033[1m"


def print_header(title: str) -> None:
    print(f"\n{Colors.BOLD}{Colors.BLUE}{'='*60}")
    print(f" {title}")
    print(f"{'='*60}{Colors.RESET}\n")


def print_field(name: str, value: object, ok: bool | None = None) -> None:
    color = "" if ok is None else (Colors.GREEN if ok else Colors.YELLOW)
    print(f"  {name:<14} {color}{value}{Colors.RESET}")


def print_error(message: str) -> None:
    print(f"{Colors.RED}✗ {message}{Colors.RESET}")


def decode_qr_data_uri(data_uri: str) -> bytes:
    """Image bytes of a QR data URI of any media type (or of bare base64)."""
    if data_uri.startswith("data:"):
        _, sep, payload = data_uri.partition(",")
        if not sep:
            raise ValueError("QR data URI has no payload")
    else:
        payload = data_uri
    try:
        return base64.b64decode(payload, validate=True)
    except binascii.Error as exc:
        raise ValueError("QR payload is not valid base64") from exc


# =========================================================================
# Commands
# =========================================================================

async def cmd_status(service, args) -> int:
    session = await service.get_status(args.tenant)
    print_header(f"Channel status - {args.tenant}")
    if session is None:
        print_error("Backend unavailable, status unknown")
        return 1

    print_field("State", service.state(args.tenant).value)
    print_field("Session", "exists" if session.exists else "none", session.exists)
    print_field("Connected", session.connected, session.connected)
    print_field("Logged in", session.logged_in, session.logged_in)
    if session.phone_number:
        from govconnect.core.validation import PhoneNumberValidator
        print_field("Number", PhoneNumberValidator.format_display(session.phone_number))
    return 0


async def cmd_pair(service, args) -> int:
    from govconnect.domain.services.pairing import PairingOutcome, PairingSession

    qr_file = Path(args.qr_file)

    def write_qr(qr: str) -> None:
        qr_file.write_bytes(decode_qr_data_uri(qr))
        print(f"  {Colors.YELLOW}New QR written to {qr_file}, scan it from WhatsApp{Colors.RESET}")

    print_header(f"Pairing - {args.tenant}")
    if args.create:
        result = await service.create_session(args.tenant)
        print_field("Session", "existing" if result.existing else "created")

    async with PairingSession(service, args.tenant, on_qr=write_qr) as pairing:
        try:
            result = await pairing.wait(timeout=args.timeout)
        except asyncio.TimeoutError:
            print_error(f"No login within {args.timeout:.0f}s")
            return 1

    if result.outcome == PairingOutcome.LOGGED_IN:
        print(f"{Colors.GREEN}✓ Connected as {result.session.phone_number}{Colors.RESET}")
        return 0
    if result.outcome == PairingOutcome.DUPLICATE:
        duplicate = result.duplicate
        print_error(f"Number already connected to {duplicate.owning_tenant_name}")
        if args.force:
            await service.resolve_duplicate_by_force(
                args.tenant, duplicate.owning_tenant_id, actor=args.actor
            )
            print(f"{Colors.GREEN}✓ Number disconnected from {duplicate.owning_tenant_name}{Colors.RESET}")
            return 0
        print("  Re-run with --force to disconnect it there, or run `delete` to give it up.")
        return 2
    print_error(f"Pairing {result.outcome.value}: {result.error or ''}")
    return 1


async def cmd_disconnect(service, args) -> int:
    await service.get_status(args.tenant)
    await service.disconnect(args.tenant)
    print(f"{Colors.GREEN}✓ {args.tenant} disconnected{Colors.RESET}")
    return 0


async def cmd_delete(service, args) -> int:
    await service.delete_session(args.tenant, actor=args.actor)
    print(f"{Colors.GREEN}✓ Session of {args.tenant} deleted{Colors.RESET}")
    return 0


async def cmd_conversations(client, args) -> int:
    from govconnect.domain.services.takeover_coordinator import TakeoverCoordinator
    from govconnect.schemas.conversation import ConversationFilter

    coordinator = TakeoverCoordinator(client, args.tenant, actor=args.actor)
    await coordinator.list_conversations(ConversationFilter(args.filter))
    await coordinator.get_processing_statuses()

    print_header(f"Conversations ({args.filter}) - {args.tenant}")
    conversations = coordinator.filtered_conversations(args.search or "")
    if not conversations:
        print("  (none)")
    for conversation in conversations:
        key = conversation.conversation_key
        owner = "ADMIN" if conversation.is_takeover else "AI"
        unread = f" [{conversation.unread_count}]" if conversation.unread_count else ""
        status = coordinator.processing_statuses.get(key)
        progress = f" {status.stage.value} {status.progress}%" if status else ""
        print(f"  {owner:<5} {conversation.title}{unread}{progress}")
        if conversation.last_message:
            print(f"        {conversation.last_message[:70]}")
    return 0


# =========================================================================
# Entry point
# =========================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Village WhatsApp channel console")
    parser.add_argument("--actor", default="cli", help="admin id written to the audit trail")
    parser.add_argument("--verbose", action="store_true", help="log to stdout")
    sub = parser.add_subparsers(dest="command", required=True)

    status = sub.add_parser("status", help="show the session status")
    status.add_argument("tenant")

    pair = sub.add_parser("pair", help="pair a number by QR")
    pair.add_argument("tenant")
    pair.add_argument("--qr-file", default="qr.png", help="where each new QR PNG is written")
    pair.add_argument("--timeout", type=float, default=180.0)
    pair.add_argument("--create", action="store_true", help="create the session first")
    pair.add_argument("--force", action="store_true", help="force-disconnect a duplicate owner")

    disconnect = sub.add_parser("disconnect", help="log the number out, keep the session")
    disconnect.add_argument("tenant")

    delete = sub.add_parser("delete", help="delete the session")
    delete.add_argument("tenant")

    conversations = sub.add_parser("conversations", help="list live chat conversations")
    conversations.add_argument("tenant")
    conversations.add_argument("--filter", choices=["all", "takeover", "bot"], default="all")
    conversations.add_argument("--search", default="")
    return parser


async def run(args) -> int:
    from govconnect.core.exceptions import AppException
    from govconnect.domain.services.backend_client import BackendClient
    from govconnect.domain.services.channel_session_service import ChannelSessionService

    commands = {
        "status": cmd_status,
        "pair": cmd_pair,
        "disconnect": cmd_disconnect,
        "delete": cmd_delete,
    }

    async with BackendClient() as client:
        try:
            if args.command == "conversations":
                return await cmd_conversations(client, args)
            service = ChannelSessionService(client)
            return await commands[args.command](service, args)
        except AppException as e:
            print_error(f"{e.error_code.value}: {e.message}")
            return 1


def main():
    args = build_parser().parse_args()

    from govconnect.core.config import settings
    from govconnect.core.logging import setup_logging

    if args.verbose:
        setup_logging(settings.LOG_LEVEL, json_format=settings.LOG_JSON)

    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
