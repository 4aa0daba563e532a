"""Real-time chat client data layer: message logs, relationships and presence kept consistent."""

from .actions import Action, ActionOutcome, ActionQueue, Notice
from .config import ClientConfig
from .conversations import ConversationAggregator, ConversationSummary
from .hub import ListenerScope, Subscription, SubscriptionHub
from .identity import Identity, IdentityError, TokenStore, resolve_identity
from .messages import MessageReconciler, MessageStore
from .models import MalformedPayload
from .presence import TypingCoordinator
from .relationships import RelationshipStateMachine
from .rest import ApiError, RestClient
from .session import ChatSession
from .transport import ReconnectExhausted, TransportChannel, TransportError

__all__ = [
    "Action",
    "ActionOutcome",
    "ActionQueue",
    "ApiError",
    "ChatSession",
    "ClientConfig",
    "ConversationAggregator",
    "ConversationSummary",
    "Identity",
    "IdentityError",
    "ListenerScope",
    "MalformedPayload",
    "MessageReconciler",
    "MessageStore",
    "Notice",
    "ReconnectExhausted",
    "RelationshipStateMachine",
    "RestClient",
    "Subscription",
    "SubscriptionHub",
    "TokenStore",
    "TransportChannel",
    "TransportError",
    "TypingCoordinator",
    "resolve_identity",
]
