"""
Resolve the single "other party" a viewer is allowed to chat with.

A conversation row names parties through nullable `customer_id`,
`restaurant_id` and `driver_id` columns. From any viewer's perspective
exactly one of the two non-viewer columns must be set; anything else is an
error, never a guess.
"""

import logging
from typing import Optional

from .errors import AmbiguousParticipant, GatewayError, NoParticipant
from .gateway import ChatGateway
from .models import Conversation, Participant, ViewerRole


logger = logging.getLogger(__name__)


def candidate_roles(viewer_role: ViewerRole) -> list[ViewerRole]:
    return [role for role in ViewerRole if role is not viewer_role]


def resolve_participant(conversation: Conversation, viewer_role: ViewerRole) -> Participant:
    populated = [
        role for role in candidate_roles(viewer_role) if conversation.party_id(role)
    ]

    if not populated:
        raise NoParticipant(conversation.id, viewer_role.value)
    if len(populated) > 1:
        raise AmbiguousParticipant(
            conversation.id, viewer_role.value, [role.value for role in populated]
        )

    role = populated[0]
    party_id = conversation.party_id(role)

    if role is ViewerRole.CUSTOMER:
        profile = conversation.customer
        return Participant(
            id=party_id,
            role=role,
            display_name=(profile and profile.full_name) or role.label,
            avatar=profile.profile_image_url if profile else None,
            phone=profile.phone if profile else None,
            email=profile.email if profile else None,
        )

    if role is ViewerRole.RESTAURANT:
        profile = conversation.restaurant
        return Participant(
            id=party_id,
            role=role,
            display_name=(profile and profile.restaurant_name) or role.label,
            avatar=profile.image_url if profile else None,
        )

    profile = conversation.driver
    return Participant(
        id=party_id,
        role=role,
        display_name=(profile and profile.full_name) or role.label,
        avatar=profile.profile_image_url if profile else None,
        phone=profile.phone if profile else None,
        vehicle_type=profile.vehicle_type if profile else None,
        rating=profile.rating if profile else None,
    )


def needs_enrichment(participant: Participant) -> bool:
    """Restaurants carry no phone of their own; it lives on the owning user."""
    return participant.role is ViewerRole.RESTAURANT and not participant.phone


async def enrich_participant(gateway: ChatGateway, participant: Participant) -> Optional[Participant]:
    """
    Fetch late contact details for `participant`.

    Returns an updated copy with the same identity, or None when there is
    nothing to add. Lookup failures are logged and yield None.
    """
    if not needs_enrichment(participant):
        return None

    try:
        phone = await gateway.fetch_owner_phone(participant.id)
    except GatewayError as e:
        logger.warning(f"participant_enrichment_failed participant={participant.id} error={e}")
        return None

    if not phone:
        return None

    return participant.model_copy(update={"phone": phone})
