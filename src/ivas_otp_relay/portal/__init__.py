from .api import DateWindow, PortalApi
from .challenge import ChallengeResolver, build_challenge_resolver
from .serializer import PageSerializer
from .session import AuthState, SessionContext, SessionManager

__all__ = [
    "AuthState",
    "ChallengeResolver",
    "DateWindow",
    "PageSerializer",
    "PortalApi",
    "SessionContext",
    "SessionManager",
    "build_challenge_resolver",
]
