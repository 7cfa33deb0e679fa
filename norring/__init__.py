"""Ring file store for NOR flash with in-memory flash, plus USB HID control request handling."""

__version__ = "0.1.0"
__all__ = ["flash", "hid_control", "norflash_ring_fs", "ring_fs"]