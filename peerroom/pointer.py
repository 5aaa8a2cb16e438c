"""Pointer events forwarded over the direct channel.

Events are sent as frames labeled
[`POINTER_LABEL`][peerroom.p2p.frames.POINTER_LABEL] whose payload is the
positional list produced by
[`PointerEvent.serialize()`][peerroom.pointer.PointerEvent.serialize].
"""
from __future__ import annotations

import dataclasses
import logging
from typing import Any

logger = logging.getLogger(__name__)

EVENT_TYPES = ('down', 'move', 'up', 'cancel')
"""Valid values of `PointerEvent.event_type`."""

_RELEASE_EVENT_TYPES = ('up', 'cancel')


@dataclasses.dataclass(frozen=True)
class PointerEvent:
    """Pointer event in coordinates relative to the shared surface.

    Attributes:
        event_type: One of `down`, `move`, `up`, or `cancel`.
        pointer_id: Identifier of the pointer on the sending device.
        pointer_type: Device kind such as `mouse`, `pen`, or `touch`.
        is_primary: If this is the primary pointer of its kind.
        x: Horizontal position normalized to `[0, 1]`.
        y: Vertical position normalized to `[0, 1]`.
        button: Button whose state changed with this event.
        buttons: Bitmask of pressed buttons.
        width: Contact width.
        height: Contact height.
        pressure: Normalized pressure in `[0, 1]`.
        tangential_pressure: Normalized barrel pressure in `[-1, 1]`.
        tilt_x: Tilt along the x axis in degrees.
        tilt_y: Tilt along the y axis in degrees.
        twist: Clockwise rotation in degrees.
    """

    event_type: str
    pointer_id: int
    pointer_type: str
    is_primary: bool
    x: float
    y: float
    button: int
    buttons: int
    width: float
    height: float
    pressure: float
    tangential_pressure: float
    tilt_x: int
    tilt_y: int
    twist: int

    def serialize(self) -> list[Any]:
        """Positional list of the fields in declaration order."""
        return [
            getattr(self, field.name) for field in dataclasses.fields(self)
        ]

    @classmethod
    def deserialize(cls, data: Any) -> PointerEvent:
        """Parse the output of `serialize()`.

        Only types are checked. Positions and pressures outside their
        documented ranges are returned unchanged.

        Raises:
            ValueError: If data is not a valid serialized pointer event.
        """
        fields = dataclasses.fields(cls)
        if not isinstance(data, (list, tuple)) or len(data) != len(fields):
            raise ValueError(
                f'Expected a list of {len(fields)} values but got {data!r}.',
            )

        event = cls(*data)
        if event.event_type not in EVENT_TYPES:
            raise ValueError(f'Unknown event type {event.event_type!r}.')
        if not isinstance(event.pointer_type, str):
            raise ValueError(
                f'Pointer type must be a string. Got {event.pointer_type!r}.',
            )
        if not isinstance(event.is_primary, bool):
            raise ValueError(
                f'Primary flag must be a bool. Got {event.is_primary!r}.',
            )
        for field in fields[4:]:
            value = getattr(event, field.name)
            if not isinstance(value, (int, float)) or isinstance(value, bool):
                raise ValueError(
                    f'Field {field.name} must be a number. Got {value!r}.',
                )
        if not isinstance(event.pointer_id, int) or isinstance(
            event.pointer_id,
            bool,
        ):
            raise ValueError(
                f'Pointer id must be an int. Got {event.pointer_id!r}.',
            )
        return event


class PointerIdMap:
    """Remap pointer identifiers onto small consecutive integers.

    Devices assign arbitrary and often large identifiers to pointers.
    Receivers that track a fixed number of contacts need small identifiers
    instead. Each new identifier is mapped to the smallest integer not used
    by another active pointer, and the mapping is released when the pointer
    goes up or is cancelled.

    Example:
        ```python
        ids = PointerIdMap()
        ids.map(down_event_with_id_7)    # 0
        ids.map(down_event_with_id_42)   # 1
        ids.map(up_event_with_id_7)      # 0, now free again
        ids.map(down_event_with_id_9)    # 0
        ```
    """

    def __init__(self) -> None:
        self._ids: dict[int, int] = {}

    def __len__(self) -> int:
        return len(self._ids)

    def map(self, event: PointerEvent) -> int:
        """Get the remapped identifier of the pointer of an event."""
        mapped = self._ids.get(event.pointer_id)
        if mapped is None:
            used = set(self._ids.values())
            mapped = 0
            while mapped in used:
                mapped += 1
            self._ids[event.pointer_id] = mapped

        if event.event_type in _RELEASE_EVENT_TYPES:
            del self._ids[event.pointer_id]
        return mapped

    def remap(self, event: PointerEvent) -> PointerEvent:
        """Get a copy of the event with its identifier remapped."""
        return dataclasses.replace(event, pointer_id=self.map(event))

    def reset(self) -> None:
        """Forget every active pointer."""
        if self._ids:
            logger.debug(f'Released {len(self._ids)} active pointer(s)')
        self._ids.clear()
