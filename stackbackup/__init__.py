"""Backup, verify, restore and prune Docker Compose stacks with bind-mounted appdata."""

__version__ = '0.1.0'
