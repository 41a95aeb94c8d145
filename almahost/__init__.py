"""Idempotent AlmaLinux host provisioning."""

from almahost.config import VERSION as __version__
