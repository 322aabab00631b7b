"""
Platform credential upkeep.

Threads hands out long-lived tokens that lapse after 60 days unless they
are refreshed while still valid. ``CredentialKeeper`` checks the expiry
before every use and refreshes inside ``refresh_window``, writing the new
token back to the workspace row.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from trendpress.exceptions import PlatformContentRejectedError, TransientCollaboratorError
from trendpress.models import Platform, PlatformCredentials, Workspace
from trendpress.tools.platforms import PlatformPublisher
from trendpress.utils import utc_now

logger = logging.getLogger(__name__)


class CredentialKeeper:
    """Hands out platform credentials, refreshing tokens close to expiry.

    Args:
        db: Store client (``SupabaseDB``).
        publishers: Platform -> publish client; the client performs the
            refresh call.
        refresh_window_days: Refresh once a token has less than this left.
    """

    def __init__(
        self,
        db: Any,
        publishers: Dict[Platform, PlatformPublisher],
        refresh_window_days: float = 7.0,
    ) -> None:
        self.db = db
        self.publishers = publishers
        self.refresh_window = timedelta(days=refresh_window_days)

    async def credentials_for(
        self,
        workspace: Workspace,
        platform: Platform,
        now: Optional[datetime] = None,
    ) -> PlatformCredentials:
        """Usable credentials of *workspace* on *platform*.

        A failed refresh of a token that has not lapsed yet is logged and
        the current token returned; the next use tries again.

        Raises:
            ConfigurationError: The workspace has no credentials for
                *platform*.
            PlatformAuthError: The platform refused the refresh (revoked
                or already expired token).
            TransientCollaboratorError: The refresh failed and the current
                token has already lapsed.
        """
        now = now or utc_now()
        credentials = workspace.credentials_for(platform)
        if credentials.expires_at is None or credentials.expires_at - now > self.refresh_window:
            return credentials
        publisher = self.publishers.get(platform)
        if publisher is None:
            return credentials

        try:
            refreshed = await publisher.refresh_credentials(credentials)
        except (TransientCollaboratorError, PlatformContentRejectedError) as exc:
            if credentials.expires_at <= now:
                raise
            logger.warning(
                "[CREDENTIALS] %s token refresh for workspace %s failed, token valid until %s: %s",
                platform.value,
                workspace.id,
                credentials.expires_at.isoformat(),
                exc,
            )
            return credentials
        if refreshed is None:
            return credentials

        workspace.credentials[platform] = refreshed
        await self.db.update_workspace_credentials(workspace)
        logger.info(
            "[CREDENTIALS] Refreshed %s token for workspace %s (expires %s)",
            platform.value,
            workspace.id,
            refreshed.expires_at.isoformat() if refreshed.expires_at else "never",
        )
        return refreshed


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    "CredentialKeeper",
]
