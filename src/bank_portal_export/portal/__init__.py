from .extractor import TransactionExtractor
from .login import LoginOrchestrator
from .mfa import MFAChallengeHandler
from .selectors import PortalSelectors
from .session import BrowserSessionManager, Session, SessionOptions
from .verifier import SessionVerifier

__all__ = [
    "BrowserSessionManager",
    "LoginOrchestrator",
    "MFAChallengeHandler",
    "PortalSelectors",
    "Session",
    "SessionOptions",
    "SessionVerifier",
    "TransactionExtractor",
]
