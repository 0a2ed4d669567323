class ChatServiceError(Exception):
    """Base class for errors raised by the chat session"""


class AuthenticationError(ChatServiceError):
    """No resolvable user identity for the session"""


class ValidationError(ChatServiceError):
    """Input rejected locally before any network call"""


class PersistenceError(ChatServiceError):
    """A store read or write failed; optimistic changes have been rolled back"""


class ChannelError(ChatServiceError):
    """The broadcast channel could not be opened or used"""
