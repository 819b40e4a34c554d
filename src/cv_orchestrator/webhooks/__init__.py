"""Outbound webhook deliveries and their verification."""
