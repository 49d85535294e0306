from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass(frozen=True)
class Ok:
    value: Any = None

    ok = True


@dataclass(frozen=True)
class Err:
    kind: str
    message: str

    ok = False


class ValidationError(Exception):
    """Field-scoped input problems that block a wizard step."""

    def __init__(self, errors):
        self.errors = dict(errors)
        super().__init__('; '.join(self.errors.values()))

    @property
    def message(self):
        return next(iter(self.errors.values()), 'Invalid input')


class GatewayError(Exception):
    def __init__(self, gateway, kind, message):
        super().__init__(message)
        self.gateway = gateway
        self.kind = kind
        self.message = message

    @classmethod
    def from_err(cls, gateway, err):
        return cls(gateway, err.kind, err.message)


class ConfigurationError(Exception):
    def __init__(self, gateway, message):
        super().__init__(message)
        self.gateway = gateway
        self.message = message


class InvalidTransition(Exception):
    pass


class RideStartInProgress(Exception):
    pass


@dataclass
class FieldErrors:
    errors: Dict[str, str] = field(default_factory=dict)

    def add(self, name, message):
        self.errors.setdefault(name, message)

    def raise_if_any(self):
        if self.errors:
            raise ValidationError(self.errors)
