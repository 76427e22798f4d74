"""Integration adapters (storage, Telegram, push, webhook) for pagerbuddy."""
