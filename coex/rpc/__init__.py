from .client import JsonRpcClient, LogEntry
from .subscription import HeaderSubscription

__all__ = ["JsonRpcClient", "LogEntry", "HeaderSubscription"]
