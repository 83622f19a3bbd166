"""Chat domain exports."""

from .exceptions import (  # noqa: F401
	ChatError,
	LoadError,
	PresenceWriteError,
	ReadReceiptError,
	SendError,
	SubscriptionError,
)
from .inbox import ChatList, ChatListService, ConversationSummary  # noqa: F401
from .models import DateGroup, Message, Profile, UserPresence  # noqa: F401
from .presence import PresenceTracker, is_online, is_typing_in  # noqa: F401
from .session import ChatSessionController, SessionState, open_chat  # noqa: F401
from .store import MessageStore, format_date_header, group_by_date  # noqa: F401
from .subscriptions import RealtimeSubscriptionManager, shared_manager  # noqa: F401
