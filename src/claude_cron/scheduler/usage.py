"""
External usage source.

Queries `ccusage blocks --active --json` for the current billing block.
Every failure surfaces as UsageUnavailableError; callers fail open.
"""

import json
import logging
import subprocess
from typing import Optional, Protocol

from ..config import DEFAULT_USAGE_COMMAND, DEFAULT_USAGE_TIMEOUT
from .entities import ActiveBlock
from .errors import UsageUnavailableError


logger = logging.getLogger(__name__)


class UsageSource(Protocol):
    """Provider of the active usage block."""

    def get_active_block(self) -> Optional[ActiveBlock]:
        """
        Return the active usage block, or None if there is none.

        Raises:
            UsageUnavailableError: The source could not be queried
        """
        ...


def parse_active_block(payload) -> Optional[ActiveBlock]:
    """
    Pick the active block out of ccusage JSON output.

    Accepts {"blocks": [...]} or a bare list of blocks.
    """
    if isinstance(payload, dict):
        blocks = payload.get("blocks", [])
    elif isinstance(payload, list):
        blocks = payload
    else:
        raise UsageUnavailableError(f"Unexpected usage payload: {type(payload).__name__}")

    for block in blocks:
        if not isinstance(block, dict) or not block.get("isActive"):
            continue
        return ActiveBlock(
            id=str(block.get("id", "")),
            start_time=str(block.get("startTime", "")),
            end_time=str(block.get("endTime", "")),
            is_active=True,
            total_tokens=int(block.get("totalTokens") or 0),
            cost_usd=float(block.get("costUSD") or 0.0),
            projection=block.get("projection"),
        )

    return None


class CcusageUsageSource:
    """Runs the ccusage CLI as a subprocess with its own timeout."""

    def __init__(
        self,
        command: Optional[list[str]] = None,
        timeout: float = DEFAULT_USAGE_TIMEOUT,
    ):
        """
        Args:
            command: argv of the usage query
            timeout: Seconds before the query is abandoned
        """
        self.command = command or DEFAULT_USAGE_COMMAND.split()
        self.timeout = timeout

    def get_active_block(self) -> Optional[ActiveBlock]:
        logger.debug(f"Querying usage: {' '.join(self.command)}")
        try:
            result = subprocess.run(
                self.command,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise UsageUnavailableError(
                f"Usage query timed out after {self.timeout}s"
            ) from e
        except OSError as e:
            raise UsageUnavailableError(f"Usage query failed to start: {e}") from e

        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            raise UsageUnavailableError(
                f"Usage query exited with code {result.returncode}: {stderr[:200]}"
            )

        try:
            payload = json.loads(result.stdout)
        except ValueError as e:
            raise UsageUnavailableError(f"Usage query returned invalid JSON: {e}") from e

        try:
            return parse_active_block(payload)
        except (TypeError, ValueError) as e:
            raise UsageUnavailableError(f"Malformed usage block: {e}") from e
