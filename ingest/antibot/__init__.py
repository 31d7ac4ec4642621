"""Anti-bot helpers: header rotation, backoff and block cooldown."""
from .retry import BackoffPolicy, BlockCooldown, CooldownState
from .user_agent import UserAgentPool, page_headers

__all__ = [
    "BackoffPolicy",
    "BlockCooldown",
    "CooldownState",
    "UserAgentPool",
    "page_headers",
]
