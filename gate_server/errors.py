"""
Error types shared by the recognition loop, descriptor cache and actuator gateway
"""


class GateError(Exception):
    """Base class for gate server errors"""


class DeviceError(GateError):
    """Serial transport failure: open, write or read"""


class DetectionError(GateError):
    """Detector or matcher failure inside a single recognition tick"""


class CacheError(GateError):
    """Unreadable or malformed cache entry"""


class CommandGrammarError(GateError):
    """Actuator command that must never reach the hardware"""
