"""Team management service: invitations and agency membership.

Invite tokens are 256-bit random values that leave the server exactly
once, inside the invite link.  Only a SHA-256 hash of
``{agency_id}.{invite_id}.{token}`` is stored.  Every failure while
accepting an invite surfaces as the same generic error so that callers
cannot probe which invites exist.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import urlencode

from sqlalchemy.ext.asyncio import AsyncSession
from travelpoint_core.errors import AlreadyExists, FailedPrecondition, InvalidArgument, NotFound
from travelpoint_core.state.repository import MemberRepository, TeamInviteRepository, UserRepository
from travelpoint_core.state.tables import MemberTable, TeamInviteTable

from api.config import APISettings
from api.middleware.rbac import INVITABLE_ROLES, parse_role

logger = logging.getLogger(__name__)

INVITE_PENDING = "pending"
INVITE_ACCEPTED = "accepted"
INVITE_REVOKED = "revoked"
INVITE_EXPIRED = "expired"

_GENERIC_INVITE_ERROR = "Invalid or expired invite"


def hash_invite_token(agency_id: str, invite_id: str, token: str) -> str:
    """Return the hex SHA-256 digest stored for an invite token."""
    composite = f"{agency_id}.{invite_id}.{token}"
    return hashlib.sha256(composite.encode("utf-8")).hexdigest()


def _invite_to_dict(row: TeamInviteTable) -> dict[str, Any]:
    return {
        "invite_id": row.id,
        "email": row.email,
        "role": row.role,
        "status": row.status,
        "expires_at": row.expires_at.isoformat(),
        "created_by": row.created_by,
        "created_at": row.created_at.isoformat() if row.created_at else None,
        "accepted_by_uid": row.accepted_by_uid,
    }


def _member_to_dict(row: MemberTable) -> dict[str, Any]:
    return {
        "user_id": row.user_id,
        "email": row.email,
        "role": row.role,
        "status": row.status,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


class TeamService:
    """Invitation and membership operations for one agency.

    Parameters
    ----------
    session:
        Active database session.
    settings:
        API settings (``app_url`` and the invite lifetime).
    agency_id:
        The agency whose team is managed.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: APISettings,
        *,
        agency_id: str,
    ) -> None:
        self._session = session
        self._settings = settings
        self._agency_id = agency_id
        self._invites = TeamInviteRepository(session, agency_id)
        self._members = MemberRepository(session, agency_id)

    async def list_members(self) -> dict[str, Any]:
        rows = await self._members.list_all()
        return {"members": [_member_to_dict(r) for r in rows], "total": len(rows)}

    async def list_invites(self, status: str | None = None) -> dict[str, Any]:
        rows = await self._invites.list_all(status=status)
        return {"invites": [_invite_to_dict(r) for r in rows], "total": len(rows)}

    async def create_invite(self, email: str, role: str, *, invited_by: str) -> dict[str, str]:
        """Create a pending invite and return its one-time link.

        Returns
        -------
        dict
            ``invite_id`` and ``invite_link``.

        Raises
        ------
        InvalidArgument
            Empty email, or a role that cannot be invited (``owner``).
        AlreadyExists
            The email already has a pending invite for this agency.
        """
        email_lower = (email or "").strip().lower()
        if not email_lower or "@" not in email_lower:
            raise InvalidArgument("Invite without a valid email", public_message="Email is required")
        try:
            parsed_role = parse_role(role)
        except ValueError:
            parsed_role = None
        if parsed_role not in INVITABLE_ROLES:
            allowed = ", ".join(sorted(r.name.lower() for r in INVITABLE_ROLES))
            raise InvalidArgument(f"Role '{role}' cannot be invited", public_message=f"Role must be one of: {allowed}")

        if await self._invites.find_pending(email_lower) is not None:
            raise AlreadyExists(
                f"Pending invite already exists for {email_lower} in agency {self._agency_id}",
                public_message="A pending invite already exists for this email",
            )

        invite_id = str(uuid.uuid4())
        token = secrets.token_hex(32)
        expires_at = datetime.now(UTC) + timedelta(hours=self._settings.invite_ttl_hours)
        await self._invites.create(
            invite_id=invite_id,
            email=email_lower,
            role=parsed_role.name.lower(),
            token_hash=hash_invite_token(self._agency_id, invite_id, token),
            expires_at=expires_at,
            created_by=invited_by,
        )

        query = urlencode({"agencyId": self._agency_id, "inviteId": invite_id, "token": token})
        invite_link = f"{self._settings.app_url.rstrip('/')}/accept-invite?{query}"
        logger.info("Invite %s created for %s (agency=%s, role=%s)", invite_id, email_lower, self._agency_id, role)
        return {"invite_id": invite_id, "invite_link": invite_link}

    async def accept_invite(
        self,
        invite_id: str,
        token: str,
        *,
        user_id: str,
        user_email: str | None,
        display_name: str | None = None,
    ) -> dict[str, Any]:
        """Join the agency through a pending invite.

        Creates or reactivates the membership, links the user profile to
        the agency with the invited role and marks the invite accepted.

        Raises
        ------
        InvalidArgument
            ``"Invalid or expired invite"`` for every failure.
        """
        if not user_email or not invite_id or not token:
            raise InvalidArgument("Accept invite with missing email, invite id or token", public_message=_GENERIC_INVITE_ERROR)
        email_lower = user_email.strip().lower()

        invite = await self._invites.get(invite_id)
        if invite is None or invite.status != INVITE_PENDING:
            raise InvalidArgument(f"Invite {invite_id} missing or not pending", public_message=_GENERIC_INVITE_ERROR)

        now = datetime.now(UTC)
        if invite.expires_at < now:
            invite.status = INVITE_EXPIRED
            # The expiry must persist even though the request fails.
            await self._session.commit()
            raise InvalidArgument(f"Invite {invite_id} expired", public_message=_GENERIC_INVITE_ERROR)

        expected = hash_invite_token(self._agency_id, invite_id, token)
        if not hmac.compare_digest(expected, invite.token_hash):
            raise InvalidArgument(f"Invite {invite_id} token mismatch", public_message=_GENERIC_INVITE_ERROR)
        if invite.email != email_lower:
            raise InvalidArgument(f"Invite {invite_id} email mismatch", public_message=_GENERIC_INVITE_ERROR)

        await self._members.upsert_active(user_id, email=email_lower, role=invite.role, invite_id=invite.id)
        await UserRepository(self._session).upsert(
            user_id,
            email=email_lower,
            agency_id=self._agency_id,
            role=invite.role,
            display_name=display_name,
        )
        invite.status = INVITE_ACCEPTED
        invite.accepted_by_uid = user_id
        invite.accepted_at = now
        await self._session.flush()

        logger.info("Invite %s accepted: %s joined agency %s as %s", invite_id, email_lower, self._agency_id, invite.role)
        return {"ok": True, "agency_id": self._agency_id, "role": invite.role}

    async def revoke_invite(self, invite_id: str, *, revoked_by: str) -> dict[str, Any]:
        """Revoke a pending invite.

        Raises
        ------
        NotFound
            No such invite in this agency.
        FailedPrecondition
            The invite is no longer pending.
        """
        invite = await self._invites.get(invite_id)
        if invite is None:
            raise NotFound(f"Invite {invite_id} not found in agency {self._agency_id}", public_message="Invite not found")
        if invite.status != INVITE_PENDING:
            raise FailedPrecondition(
                f"Invite {invite_id} is {invite.status}",
                public_message="Can only revoke pending invites",
            )
        invite.status = INVITE_REVOKED
        invite.revoked_by = revoked_by
        invite.revoked_at = datetime.now(UTC)
        await self._session.flush()
        logger.info("Invite %s revoked by %s", invite_id, revoked_by)
        return {"ok": True}
