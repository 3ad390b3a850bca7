"""Bitrix24 Open Channel connector lifecycle."""
