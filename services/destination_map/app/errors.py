"""Error taxonomy of the place selection core.

Every error here is recoverable by the caller: the store and the controller
raise them, the HTTP layer turns them into responses, and none of them
leaves state half-applied.
"""

from __future__ import annotations


class PlaceError(Exception):
    """Base class for place selection errors."""


class PlacemarkNotFound(PlaceError):
    def __init__(self, placemark_id: int) -> None:
        super().__init__(f"placemark {placemark_id} does not exist")
        self.placemark_id = placemark_id


class DestinationNotFound(PlaceError):
    def __init__(self, destination_id: int) -> None:
        super().__init__(f"destination {destination_id} does not exist")
        self.destination_id = destination_id


class AlreadyMember(PlaceError):
    """The placemark already belongs to a destination."""

    def __init__(self, placemark_id: int, destination_id: int) -> None:
        super().__init__(
            f"placemark {placemark_id} is already a member of destination "
            f"{destination_id}"
        )
        self.placemark_id = placemark_id
        self.destination_id = destination_id


class NotMember(PlaceError):
    """The placemark is transient and cannot be demoted."""

    def __init__(self, placemark_id: int) -> None:
        super().__init__(f"placemark {placemark_id} is not a destination member")
        self.placemark_id = placemark_id


class NotVisible(PlaceError):
    def __init__(self, placemark_id: int) -> None:
        super().__init__(f"placemark {placemark_id} is not currently visible")
        self.placemark_id = placemark_id


class NothingSelected(PlaceError):
    def __init__(self) -> None:
        super().__init__("no placemark is selected")


class PendingEdit(PlaceError):
    """The selected placemark has unsaved name or address edits."""

    def __init__(self) -> None:
        super().__init__("save or discard the pending edits first")


class EmptyName(PlaceError):
    def __init__(self) -> None:
        super().__init__("the placemark needs a name")


class RouteNotAllowed(PlaceError):
    """Routes are only offered for transient placemarks."""

    def __init__(self, placemark_id: int) -> None:
        super().__init__(
            f"placemark {placemark_id} belongs to a destination; no route offered"
        )
        self.placemark_id = placemark_id


class Unavailable(PlaceError):
    """An external lookup (search, route, preview) could not be served."""
