"""Entitlements service distribution package."""
