from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from app.services.call_event_models import ResolvedBy, SalesRepResolution
from app.services.user_directory import UserDirectory

logger = logging.getLogger(__name__)


class SalesRepResolver:
    """Find the team member a call belongs to.

    A webhook arrives under one integration holder's account (often a head of
    sales), but the recording may belong to anyone in the organization. The
    reported email wins, then an exact full-name match, then the webhook
    owner. The owner is the floor, so a resolution is always returned.

    Name matching is exact (case-insensitive, whitespace-collapsed) on
    ``first_name last_name``. Two active users sharing a display name make the
    name ambiguous and resolution falls back to the owner.
    """

    def __init__(self, user_directory: UserDirectory) -> None:
        self.user_directory = user_directory

    def resolve(
        self,
        organization_id: str,
        reported_email: str | None,
        reported_name: str | None,
        fallback_user: Mapping[str, Any],
    ) -> SalesRepResolution:
        if reported_email:
            user_by_email = self.user_directory.find_user_by_email(
                reported_email,
                organization_id=organization_id,
            )
            if user_by_email and user_by_email.get("is_active", False):
                return SalesRepResolution(user=user_by_email, resolved_by=ResolvedBy.email)

        normalized_name = _normalize_name(reported_name)
        if normalized_name:
            matches = [
                user
                for user in self.user_directory.find_active_users_by_organization(organization_id)
                if _normalize_name(_full_name(user)) == normalized_name
            ]
            if len(matches) == 1:
                return SalesRepResolution(user=matches[0], resolved_by=ResolvedBy.name)
            if len(matches) > 1:
                logger.warning(
                    "Sales rep name is ambiguous organization_id=%s name=%s matches=%s",
                    organization_id,
                    reported_name,
                    len(matches),
                )

        if not reported_email and not normalized_name:
            logger.info(
                "Sales rep resolution_ambiguous organization_id=%s fallback_user_id=%s reason=no_owner_signal",
                organization_id,
                fallback_user.get("_id"),
            )
        return SalesRepResolution(user=dict(fallback_user), resolved_by=ResolvedBy.fallback)


def _full_name(user: Mapping[str, Any]) -> str:
    first_name = str(user.get("first_name") or "")
    last_name = str(user.get("last_name") or "")
    return f"{first_name} {last_name}"


def _normalize_name(name: str | None) -> str:
    if not name:
        return ""
    return " ".join(name.split()).lower()
