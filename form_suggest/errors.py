from __future__ import annotations


class SuggestionError(Exception):
    """Base class for failures inside the suggestion subsystem.

    None of these ever reach the hosting page or the tab lifecycle; the
    coordinator and panel log them and degrade.
    """


class BridgeNotReadyError(SuggestionError):
    """The observer or the bridge binding is missing after injection."""

    def __init__(self, observer: bool = False, bridge: bool = False) -> None:
        self.observer = observer
        self.bridge = bridge
        super().__init__(f"bridge not ready observer={observer} bridge={bridge}")


class StoreError(SuggestionError):
    """Persistent store I/O failed or exceeded its timeout."""


class SerializationError(SuggestionError):
    """A payload crossing the bridge could not be decoded."""


class UntrackableFieldError(SuggestionError):
    """The field has neither an id nor a name attribute."""
