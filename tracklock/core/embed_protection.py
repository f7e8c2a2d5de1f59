"""Origin / embed protection helper.

Blocks casual hot-linking by comparing Origin/Referer against the Host header.

Known weakness: the comparison is substring containment, so
``https://example.com.attacker.net`` passes for host ``example.com``, and a
request without a Host header passes whenever Origin or Referer is present.
This is a deterrent against embedding from other sites, not an access control;
the signed tokens are the real gate. Outside production every request passes.
"""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import Request

logger = logging.getLogger(__name__)


class OriginGuard:

    def __init__(self, is_production: bool):
        self.is_production = is_production

    @staticmethod
    def check(origin: Optional[str], referer: Optional[str], host: Optional[str], is_production: bool) -> bool:
        if not is_production:
            return True
        needle = host or ""
        return (origin is not None and needle in origin) or (referer is not None and needle in referer)

    def allows(self, request: Request) -> bool:
        allowed = self.check(
            request.headers.get("origin"),
            request.headers.get("referer"),
            request.headers.get("host"),
            self.is_production,
        )
        if not allowed:
            logger.warning(
                "Origin rejected for %s: origin=%r referer=%r host=%r",
                request.url.path,
                request.headers.get("origin"),
                request.headers.get("referer"),
                request.headers.get("host"),
            )
        return allowed
