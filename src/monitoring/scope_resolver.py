"""Expands a rule's target scope into the campaigns it monitors."""

from src.monitoring.errors import ResolutionError
from src.monitoring.models import Campaign, ScopeType, TargetScope
from src.utils.logger import setup_logger

logger = setup_logger(__name__)


class ScopeResolver:
    """Resolve campaigns / clients / users scopes to a de-duplicated campaign list.

    ``entities`` must provide ``get_campaign(id)``, ``get_campaigns_by_client(id)``
    and ``get_user_client_ids(id)``.
    """

    def __init__(self, entities):
        self.entities = entities

    def resolve(self, scope: TargetScope) -> list[Campaign]:
        scope_type = scope.scope_type
        if scope_type is None:
            logger.warning("Unknown target scope type %r; nothing to monitor.", scope.type)
            return []

        if scope_type is ScopeType.CAMPAIGNS:
            campaigns = self._resolve_ids(scope.ids, self._campaign)
        elif scope_type is ScopeType.CLIENTS:
            campaigns = self._resolve_ids(scope.ids, self._client_campaigns)
        else:
            campaigns = self._resolve_ids(scope.ids, self._user_campaigns)

        unique = self._dedupe(campaigns)
        logger.info(
            "Resolved %s scope (%d ids) to %d unique campaigns.",
            scope_type.value, len(scope.ids), len(unique),
        )
        return unique

    def _resolve_ids(self, ids: list[str], lookup) -> list[Campaign]:
        campaigns: list[Campaign] = []
        for scope_id in ids:
            try:
                campaigns.extend(lookup(scope_id))
            except ResolutionError as e:
                logger.warning("Skipping scope id %s: %s", scope_id, e)
        return campaigns

    def _campaign(self, campaign_id: str) -> list[Campaign]:
        try:
            campaign = self.entities.get_campaign(campaign_id)
        except Exception as e:
            raise ResolutionError(f"campaign lookup failed: {e}") from e
        if campaign is None:
            logger.info("Campaign %s not found; skipping.", campaign_id)
            return []
        return [campaign]

    def _client_campaigns(self, client_id: str) -> list[Campaign]:
        try:
            return list(self.entities.get_campaigns_by_client(client_id))
        except Exception as e:
            raise ResolutionError(f"client campaign lookup failed: {e}") from e

    def _user_campaigns(self, user_id: str) -> list[Campaign]:
        try:
            client_ids = self.entities.get_user_client_ids(user_id)
        except Exception as e:
            raise ResolutionError(f"user lookup failed: {e}") from e
        if not client_ids:
            logger.warning("User %s not found or has no assigned clients.", user_id)
            return []
        return self._resolve_ids(list(client_ids), self._client_campaigns)

    @staticmethod
    def _dedupe(campaigns: list[Campaign]) -> list[Campaign]:
        seen: set[str] = set()
        unique = []
        for campaign in campaigns:
            if campaign.id in seen:
                continue
            seen.add(campaign.id)
            unique.append(campaign)
        return unique
