"""Frame splitting for size-limited BLE writes."""

from typing import List


def split_frames(payload: bytes, max_frame_size: int) -> List[bytes]:
    """Split a payload into transport-sized frames.

    Every frame except possibly the last is exactly ``max_frame_size`` bytes
    and the frames concatenate back to ``payload``. An empty payload yields
    no frames.

    Args:
        payload: Bytes to split
        max_frame_size: Largest frame the transport accepts

    Returns:
        Ordered list of frames

    Raises:
        ValueError: If max_frame_size is not positive
    """
    if max_frame_size <= 0:
        raise ValueError(f"max_frame_size must be positive, got {max_frame_size}")
    data = bytes(payload)
    return [data[i : i + max_frame_size] for i in range(0, len(data), max_frame_size)]


def to_hex(data: bytes, limit: int = 64) -> str:
    """Space separated upper-case hex dump, truncated after ``limit`` bytes."""
    text = " ".join(f"{b:02X}" for b in data[:limit])
    if len(data) > limit:
        text += f" ... (+{len(data) - limit} bytes)"
    return text
