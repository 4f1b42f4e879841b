from __future__ import annotations


class ConfigurationError(ValueError):
    pass


class NoMatchError(ConfigurationError):
    pass


class InvalidCropError(ConfigurationError):
    pass


class MissingRegistrationError(ConfigurationError):
    pass


class RegistrationAmbiguityError(ConfigurationError):
    pass


class AmbiguousGridError(RegistrationAmbiguityError):
    pass


class TileLoadError(Exception):
    pass


class TileNotFoundError(TileLoadError):
    pass


class TileCorruptError(TileLoadError):
    pass


class TileLoadWarning(UserWarning):
    pass
