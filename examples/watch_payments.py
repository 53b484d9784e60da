#!/usr/bin/env python3
"""
FacePay Example — Watch Payment Requests

Signs in, then polls for payment requests the way the mobile app does while
it is in the foreground: new requests are announced (or auto-approved when an
auto-pay rule covers them) and resolved requests are reported once.

Optionally verifies the account PIN first, showing the lockout countdown if
the server has locked PIN entry.

Prerequisites:
  pip install facepay

  Set your credentials as environment variables:

    export FACEPAY_USERNAME="+15555550100"
    export FACEPAY_PASSWORD="..."

  Optionally set the backend URL and poll interval:
    export FACEPAY_API_BASE_URL="https://api.dev.facepe.ai"  # default
    export FACEPAY_POLL_INTERVAL=10

Usage:
  python watch_payments.py                  # watch for 60 seconds
  python watch_payments.py --duration 300   # watch for 5 minutes
  python watch_payments.py --pin 1234       # verify PIN before watching
"""

import argparse
import asyncio
import os
import sys

from facepay import (
    FacePayClient,
    FacePayError,
    FileStorage,
    LockoutRepository,
    LoggingDispatcher,
    PaymentRequestSync,
    PaymentsClient,
    PinLockoutGuard,
    Settings,
)
from facepay.log import configure_logging


async def check_pin(client: FacePayClient, settings: Settings, pin: str) -> bool:
    guard = PinLockoutGuard(
        client,
        LockoutRepository(FileStorage(settings.data_dir)),
        max_attempts=settings.max_pin_attempts,
        on_failure_feedback=lambda: print("  *bzz*"),
    )
    await guard.mount()
    try:
        if guard.is_locked:
            print(f"  PIN entry locked. Try again in {guard.format_remaining()}.")
            return False

        result = await guard.verify(pin)
        if result.success:
            print("  PIN verified.")
            return True
        print(f"  {result.message}")
        if result.last_attempt_warning:
            print("  Warning: one more wrong PIN may lock your account.")
        return False
    finally:
        guard.unmount()


async def watch(args, settings: Settings):
    client = FacePayClient.from_settings(settings)

    if not client.restore_session():
        username = os.environ.get("FACEPAY_USERNAME")
        password = os.environ.get("FACEPAY_PASSWORD")
        if not username or not password:
            print("Error: FACEPAY_USERNAME and FACEPAY_PASSWORD must be set.")
            sys.exit(1)
        print(f"Signing in to {settings.base_url}...")
        await client.login(username, password)

    if args.pin and not await check_pin(client, settings, args.pin):
        return

    sync = PaymentRequestSync(
        PaymentsClient(client),
        LoggingDispatcher(),
        interval=settings.poll_interval,
    )
    sync.register_update_callback(
        lambda: print(f"  {len(sync.pending)} request(s) awaiting approval")
    )

    print(f"Watching payment requests for {args.duration}s (Ctrl+C to stop)\n")
    sync.start()
    try:
        await asyncio.sleep(args.duration)
    finally:
        sync.stop()


def main():
    parser = argparse.ArgumentParser(description="FacePay payment request watcher")
    parser.add_argument(
        "--duration", type=float, default=60,
        help="Seconds to keep polling (default: 60)",
    )
    parser.add_argument(
        "--pin", default=None,
        help="Verify this 4-digit PIN before watching",
    )
    args = parser.parse_args()

    settings = Settings.from_env()
    configure_logging(settings.log_level)

    try:
        asyncio.run(watch(args, settings))
    except KeyboardInterrupt:
        pass
    except FacePayError as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
