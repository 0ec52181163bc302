"""
clockgov - Devices

The device boundary and its nvidia-smi implementation.
"""

from .interface import CommandResult, DeviceInterface
from .nvidia_smi import NvidiaSmiDevice
