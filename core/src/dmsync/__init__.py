"""Conversation synchronization and social-graph consistency for direct messages."""

from .auth import AuthEvents, AuthSession, SessionContext
from .friends import FriendshipManager
from .media import MediaAttachmentPipeline
from .models import ChatMessage, Friendship, Message, Profile
from .profiles import ProfileProvisioner
from .rooms import room_id
from .runtime import Runtime, build_runtime
from .server import main, simulate
from .sync import ConversationSync, ConversationView

__all__ = [
    "AuthEvents",
    "AuthSession",
    "ChatMessage",
    "ConversationSync",
    "ConversationView",
    "Friendship",
    "FriendshipManager",
    "MediaAttachmentPipeline",
    "Message",
    "Profile",
    "ProfileProvisioner",
    "Runtime",
    "SessionContext",
    "build_runtime",
    "main",
    "room_id",
    "simulate",
]
