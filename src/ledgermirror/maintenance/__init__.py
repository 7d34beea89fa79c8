"""Periodic consistency tasks owned by the supervisor."""
