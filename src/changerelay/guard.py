"""
Event loop guard

The pipeline's own archive writes can produce storage-change notifications.
Events whose actor is the pipeline itself are discarded (and acknowledged) so
they never re-enter processing.
"""

import logging
from typing import Iterable, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


class ActorIdentity(BaseModel):
    """Identity recorded on a storage event"""

    model_config = ConfigDict(populate_by_name=True)

    type: Optional[str] = None
    principal_id: Optional[str] = Field(default=None, alias="principalId")
    arn: Optional[str] = None


def account_of(arn: str) -> Optional[str]:
    """Account segment of an ARN (``arn:partition:service:region:account:...``)"""
    parts = arn.split(":")
    if len(parts) >= 6 and parts[0] == "arn" and parts[4]:
        return parts[4]
    return None


def role_name_of(arn: str) -> Optional[str]:
    """Role name of ``...:role/[path/]name`` or ``...:assumed-role/name/session``"""
    parts = arn.split(":")
    if len(parts) < 6:
        return None
    resource = parts[5].split("/")
    if resource[0] == "role" and len(resource) >= 2:
        return resource[-1]
    if resource[0] == "assumed-role" and len(resource) >= 2:
        return resource[1]
    return None


class EventLoopGuard:
    """Decides whether an event was written by this pipeline"""

    def __init__(self, self_identity: Optional[str], extra_patterns: Iterable[str] = ()):
        self.self_identity = self_identity or None
        self.extra_patterns = [p.lower() for p in extra_patterns if p]
        self._self_account = account_of(self.self_identity) if self.self_identity else None
        self._self_role = role_name_of(self.self_identity) if self.self_identity else None
        if not self.self_identity and not self.extra_patterns:
            logger.warning("No self identity configured; event loop prevention is disabled")

    def should_process(self, actor: Union[None, str, ActorIdentity]) -> bool:
        """False if the actor is this pipeline; a missing actor is processed"""
        if actor is None:
            return True
        if isinstance(actor, str):
            actor = ActorIdentity(arn=actor)

        reason = self._self_match(actor)
        if reason:
            logger.info(f"Discarding self-generated event ({reason}): arn={actor.arn} principal={actor.principal_id}")
            return False
        return True

    def _self_match(self, actor: ActorIdentity) -> Optional[str]:
        arn = actor.arn or ""
        principal = actor.principal_id or ""

        if self.self_identity:
            if arn == self.self_identity or principal == self.self_identity:
                return "exact identity match"
            # Assumed-role session of our own role, in our own account
            if (
                arn
                and self._self_role
                and self._self_account
                and account_of(arn) == self._self_account
                and role_name_of(arn) == self._self_role
            ):
                return "assumed role of self identity"
            # Principal IDs of role sessions read ``ROLEID:session-name``
            if self._self_role and ":" in principal and principal.split(":", 1)[1] == self._self_role:
                return "principal session is self role name"

        for pattern in self.extra_patterns:
            if pattern in arn.lower() or pattern in principal.lower():
                return f"matches pattern {pattern!r}"
        return None
