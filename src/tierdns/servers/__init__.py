"""Inbound UDP and TCP listeners."""
