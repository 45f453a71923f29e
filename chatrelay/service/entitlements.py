from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Tuple

from chatrelay.config import ChatModelId, Settings


@dataclass(frozen=True)
class Entitlements:
    max_messages_per_day: int
    available_models: Tuple[str, ...]


def entitlements_by_user_type(settings: Settings) -> Dict[str, Entitlements]:
    """Per-tier limits; ceilings are read from settings so deployments can tune them."""
    models = (ChatModelId.CHAT.value, ChatModelId.REASONING.value)
    return {
        "guest": Entitlements(settings.guest_max_messages_per_day, models),
        "regular": Entitlements(settings.regular_max_messages_per_day, models),
    }


def entitlements_for(settings: Settings, user_type: str) -> Entitlements:
    table = entitlements_by_user_type(settings)
    return table.get(user_type, table["guest"])
