"""Key/value configuration sources for the resolver.

This module provides the two lookup sources the resolver consults: the cloud
instance metadata service, reached over its local HTTP endpoint, and the
process environment backed by an optional ``.env`` file.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import TYPE_CHECKING

import requests
from dotenv import dotenv_values

from .logger import logger as default_logger

if TYPE_CHECKING:
    import logging
    from collections.abc import Mapping

METADATA_URL = "http://metadata.google.internal/computeMetadata/v1/instance/attributes"
METADATA_HEADERS = {"Metadata-Flavor": "Google"}


def looks_like_html(value: str) -> bool:
    """Detect an HTML error page returned in place of a metadata value.

    Returns:
        True if the body is an HTML document rather than a plain value.
    """
    head = value.lstrip()[:64].lower()
    return head.startswith(("<!doctype html", "<html")) or "<title>" in head


class MetadataSource:
    """Reads instance attributes from the metadata service."""

    def __init__(
        self,
        base_url: str = METADATA_URL,
        timeout: float = 2.0,
        session: requests.Session | None = None,
        logger: logging.Logger = default_logger,
    ) -> None:
        """Initialise metadata source with endpoint and HTTP session."""
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.logger = logger
        self.reachable = True

    def get(self, key: str) -> str | None:
        """Look up one attribute.

        Returns:
            The stripped attribute value, or None when it is missing, empty,
            an HTML error page, or the service cannot be reached.
        """
        if not self.reachable:
            return None

        url = f"{self.base_url}/{key}"
        try:
            response = self.session.get(url, headers=METADATA_HEADERS, timeout=self.timeout)
        except requests.ConnectionError as e:
            # Not on a cloud instance; stop paying the timeout for every key
            self.logger.debug("Metadata service unreachable, skipping further lookups: %s", e)
            self.reachable = False
            return None
        except requests.RequestException as e:
            self.logger.debug("Metadata lookup for %s failed: %s", key, e)
            return None

        if not response.ok:
            self.logger.debug("Metadata %s not set (HTTP %s)", key, response.status_code)
            return None

        value = response.text.strip()
        if not value or looks_like_html(value):
            return None
        return value


class EnvironmentSource:
    """Reads options from environment variables, falling back to a ``.env`` file."""

    def __init__(
        self, environ: Mapping[str, str] | None = None, env_file: str | Path | None = None
    ) -> None:
        """Initialise environment source.

        Args:
            environ: Variables to consult first, defaults to ``os.environ``.
            env_file: Optional ``.env`` file consulted after ``environ``.
        """
        self.environ = os.environ if environ is None else environ
        self.file_values: dict[str, str | None] = {}
        if env_file is not None and Path(env_file).is_file():
            self.file_values = dict(dotenv_values(env_file))

    def get(self, name: str) -> str | None:
        """Look up one variable.

        Returns:
            The stripped value, or None when unset or empty in both places.
        """
        for values in (self.environ, self.file_values):
            value = values.get(name)
            if value and value.strip():
                return value.strip()
        return None
