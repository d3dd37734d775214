#!/usr/bin/env python3
"""
Check Bot API connectivity for local development.

This script verifies the configured token, shows the current push-subscription
state and the persisted update offset for the configured account.
"""

import asyncio
import sys
from pathlib import Path

# Add the src directory to the path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from update_monitor.bot_api import BotAPIClient
from update_monitor.config import get_settings, resolve_account
from update_monitor.exceptions import UpdateMonitorError
from update_monitor.state import OffsetStoreFactory


async def check_bot_connection() -> bool:
    """Check the token, webhook state and stored offset."""
    print("🔍 Checking Bot API connection...")

    try:
        settings = get_settings()
        account = resolve_account(settings)

        print("📋 Configuration:")
        print(f"   Account: {account.account_id}")
        print(f"   Mode: {settings.monitor_mode}")
        print(f"   Proxy: {account.proxy or 'none'}")

        async with BotAPIClient(
            account.token,
            proxy=account.proxy,
            base_url=settings.telegram_api_base_url,
            request_timeout=settings.request_timeout_seconds,
        ) as client:
            me = await client.call("getMe")
            print(f"✅ Connected as: @{me.get('username')} (id {me.get('id')})")

            webhook_info = await client.get_webhook_info()
            if webhook_info.get("url"):
                print(f"ℹ️  Webhook set: {webhook_info['url']}")
                print(f"   Pending updates: {webhook_info.get('pending_update_count', 0)}")
            else:
                print("ℹ️  No webhook set (polling will work)")

        store = OffsetStoreFactory.create_offset_store(
            settings.offset_store_backend, state_dir=settings.state_dir
        )
        offset = await store.read(account.account_id)
        print(f"ℹ️  Persisted update offset: {offset if offset is not None else 'none'}")

        print("\n🎉 Bot API connection check successful!")
        return True

    except UpdateMonitorError as e:
        print(f"❌ Bot API connection check failed: {e}")
        return False


if __name__ == "__main__":
    print("🚀 Update Monitor - Bot API Connection Check")
    print("=" * 50)

    success = asyncio.run(check_bot_connection())
    sys.exit(0 if success else 1)
