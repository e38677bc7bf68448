class KasseError(Exception):
    """Base class for all errors raised by the till."""


class StorageError(KasseError):
    """A store operation failed and was rolled back."""


class CardExistsError(KasseError):
    pass


class UserExistsError(KasseError):
    pass


class RegistrationBusyError(KasseError):
    """Another card registration window is already open."""


class ReaderError(KasseError):
    """The card reader failed; no further swipes can be read."""


class ReaderClosedError(ReaderError):
    pass


class ConfigError(KasseError):
    pass
