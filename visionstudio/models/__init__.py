from visionstudio.models.account import Account
from visionstudio.models.usage_entry import UsageEntry
from visionstudio.models.artifact import Artifact
from visionstudio.models.chat_session import ChatSession
from visionstudio.models.chat_message import ChatMessage
from visionstudio.models.failed_job import FailedJob

__all__ = [
    "Account",
    "UsageEntry",
    "Artifact",
    "ChatSession",
    "ChatMessage",
    "FailedJob",
]
