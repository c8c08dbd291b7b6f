"""Hardware probing module for detecting accelerator capabilities."""

import logging
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Optional

logger = logging.getLogger(__name__)

COMPILER_DQ_PROPERTY = "NPU_COMPILER_DYNAMIC_QUANTIZATION"


@dataclass(frozen=True)
class HardwareDescriptor:
    """Capabilities of the target accelerator, read once at setup."""
    arch: str  # e.g. "4000"
    max_tiles: int  # -1 when the device does not report it
    compiler_dq: bool = False  # compiler-side dynamic quantization
    supported_properties: FrozenSet[str] = field(default_factory=frozenset)

    def supports(self, prop: str) -> bool:
        return prop in self.supported_properties

    def to_dict(self) -> Dict:
        """Convert to dictionary for serialization."""
        return {
            'arch': self.arch,
            'max_tiles': self.max_tiles,
            'compiler_dq': self.compiler_dq,
            'supported_properties': sorted(self.supported_properties),
        }


def _read(engine, device: str, prop: str, default):
    try:
        return engine.get_property(device, prop)
    except KeyError:
        return default


def probe(engine=None, device: str = "NPU") -> Optional[HardwareDescriptor]:
    """
    Probe the accelerator through the device engine.

    Args:
        engine: Device engine; the process-wide engine if None
        device: Device to inspect

    Returns:
        HardwareDescriptor, or None if the device is not available
    """
    if engine is None:
        from .engine import get_engine
        engine = get_engine()

    if device not in engine.available_devices:
        logger.info("Device %s not available, skipping hardware probe", device)
        return None

    supported = frozenset(_read(engine, device, "SUPPORTED_PROPERTIES", ()))
    desc = HardwareDescriptor(
        arch=str(_read(engine, device, "DEVICE_ARCHITECTURE", "")),
        max_tiles=int(_read(engine, device, "NPU_MAX_TILES", -1)),
        compiler_dq=COMPILER_DQ_PROPERTY in supported,
        supported_properties=supported,
    )
    logger.debug("Probed %s: %s", device, desc.to_dict())
    return desc


def print_hardware_info(desc: Optional[HardwareDescriptor] = None):
    """Print formatted hardware information."""
    if desc is None:
        desc = probe()

    print("=" * 60)
    print("Hardware Configuration")
    print("=" * 60)
    if desc is None:
        print("\nNo accelerator detected")
    else:
        print(f"\nArchitecture: {desc.arch or 'unknown'}")
        print(f"Max tiles: {desc.max_tiles}")
        print(f"Compiler dynamic quantization: {'yes' if desc.compiler_dq else 'no'}")
        print(f"Supported properties: {len(desc.supported_properties)}")
    print("=" * 60)
