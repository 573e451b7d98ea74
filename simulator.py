"""Interactive CLI chat simulator — test the auth and downgrade flows without Twilio."""

import asyncio

from rcs_auth.database.engine import async_session_factory, init_db
from rcs_auth.services.phone import normalize_phone
from rcs_auth.webhook.handler import build_services

BLUE = "\033[94m"
GREEN = "\033[92m"
YELLOW = "\033[93m"
CYAN = "\033[96m"
DIM = "\033[2m"
BOLD = "\033[1m"
RESET = "\033[0m"

CHANNELS = ("RCS", "SM", "MM")


def _read_phone(prompt: str) -> str | None:
    """Ask for a number and normalise it the way the webhook does."""
    raw = input(prompt).strip()
    if not raw:
        return None
    phone = normalize_phone(raw)
    if phone is None:
        print(f"{DIM}Not a valid phone number: {raw}{RESET}")
    return phone


async def main() -> None:
    print(f"\n{BOLD}{'=' * 52}")
    print(f"  🔐  RCS Auth — Chat Simulator")
    print(f"{'=' * 52}{RESET}\n")

    await init_db()

    print(f"{DIM}Tip: Use +15551234567 (seeded) or +19999999999 (unknown){RESET}")
    print(f"{DIM}     Type 'quit' to exit, 'switch' to change phone number{RESET}")
    print(f"{DIM}     'channel RCS|SM|MM' sets the inbound transport{RESET}")
    print(f"{DIM}     'status <SID> RCS|SM|MM' fakes a delivery callback{RESET}")
    print(f"{DIM}     Replies are printed in the logs when Twilio is not configured{RESET}\n")

    phone = _read_phone(f"{YELLOW}Enter phone number to simulate: {RESET}") or "+19999999999"
    channel = "RCS"
    print(f"{DIM}Simulating as {phone} over {channel}{RESET}\n")

    services = build_services(async_session_factory)

    while True:
        try:
            user_input = input(f"{BLUE}{BOLD}You ({channel}):{RESET} ").strip()
        except (KeyboardInterrupt, EOFError):
            print(f"\n{DIM}Goodbye!{RESET}")
            break

        if not user_input:
            continue

        if user_input.lower() == "quit":
            print(f"{DIM}Goodbye!{RESET}")
            break

        if user_input.lower() == "switch":
            phone = _read_phone(f"{YELLOW}New phone number: {RESET}") or phone
            print(f"{DIM}Switched to {phone}{RESET}\n")
            continue

        parts = user_input.split()
        if parts[0].lower() == "channel" and len(parts) == 2 and parts[1].upper() in CHANNELS:
            channel = parts[1].upper()
            print(f"{DIM}Inbound channel set to {channel}{RESET}\n")
            continue

        if parts[0].lower() == "status" and len(parts) == 3:
            update = await services.manager.apply_status_callback(parts[1], parts[2].upper())
            if update is None:
                print(f"{CYAN}No session sent message {parts[1]}{RESET}\n")
            else:
                print(
                    f"{CYAN}Channel now {update.session.channel_type.value}"
                    f"{' (downgraded)' if update.downgraded else ''}{RESET}\n"
                )
            continue

        response = await services.router.handle(phone, user_input, channel)
        session = await services.manager.store.fetch(phone)
        if session is not None and session.last_message_id:
            print(f"{DIM}last message id: {session.last_message_id}{RESET}")

        print(f"{GREEN}{BOLD}Agent:{RESET} {response.reply_text}\n")


if __name__ == "__main__":
    asyncio.run(main())
