class ChatError(Exception):
    """Base class for every chat-domain failure."""


class GatewayError(ChatError):
    """A call to the hosted backend failed (network, PostgREST or RPC)."""

    def __init__(self, action: str, detail: str | None = None):
        self.action = action
        self.detail = detail
        message = f"{action} failed"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class ConversationNotFound(GatewayError):
    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__("get_conversation", f"no conversation with id={conversation_id}")


class UploadError(ChatError):
    """Media host rejected or failed an upload."""


class ParticipantResolutionError(ChatError):
    """The conversation does not name exactly one other party for the viewer."""

    def __init__(self, conversation_id: str, viewer_role: str, message: str):
        self.conversation_id = conversation_id
        self.viewer_role = viewer_role
        super().__init__(message)


class AmbiguousParticipant(ParticipantResolutionError):
    def __init__(self, conversation_id: str, viewer_role: str, candidates: list[str]):
        self.candidates = candidates
        super().__init__(
            conversation_id,
            viewer_role,
            f"conversation {conversation_id} has more than one party for a "
            f"{viewer_role} viewer: {', '.join(candidates)}",
        )


class NoParticipant(ParticipantResolutionError):
    def __init__(self, conversation_id: str, viewer_role: str):
        super().__init__(
            conversation_id,
            viewer_role,
            f"conversation {conversation_id} has no other party for a {viewer_role} viewer",
        )


class DuplicateLocalId(ChatError):
    def __init__(self, local_id: str):
        self.local_id = local_id
        super().__init__(f"local id {local_id} was already issued by this store")


class ScreenNotFound(ChatError):
    def __init__(self, screen_id: str):
        self.screen_id = screen_id
        super().__init__(f"no open chat screen with id={screen_id}")
