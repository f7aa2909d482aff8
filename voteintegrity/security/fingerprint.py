# voteintegrity/security/fingerprint.py

# Device fingerprints captured by the client (canvas, WebGL, audio, fonts...)
# reach the RiskGate only through FingerprintSource, so the gate can be driven
# by synthetic fingerprints without a browser.

import hashlib
import json
import re
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Optional, Tuple

_HEX64 = re.compile(r'^[0-9a-f]{64}$')


class FingerprintSource(ABC):
    @abstractmethod
    def fingerprint_hash(self) -> str:
        """Stable SHA-256 hex digest identifying the device."""


@dataclass(frozen=True)
class DeviceFingerprint(FingerprintSource):
    user_agent: str = ''
    screen_resolution: str = ''
    timezone: str = ''
    language: str = ''
    platform: str = ''
    hardware_concurrency: int = 0
    device_memory: float = 0
    cookie_enabled: bool = True
    do_not_track: Optional[str] = None
    canvas_fingerprint: str = ''
    webgl_fingerprint: str = ''
    audio_fingerprint: str = ''
    fonts: Tuple[str, ...] = field(default_factory=tuple)
    plugins: Tuple[str, ...] = field(default_factory=tuple)

    _ALIASES = {
        'userAgent': 'user_agent',
        'screenResolution': 'screen_resolution',
        'hardwareConcurrency': 'hardware_concurrency',
        'deviceMemory': 'device_memory',
        'cookieEnabled': 'cookie_enabled',
        'doNotTrack': 'do_not_track',
        'canvasFingerprint': 'canvas_fingerprint',
        'webglFingerprint': 'webgl_fingerprint',
        'audioFingerprint': 'audio_fingerprint',
    }

    def fingerprint_hash(self) -> str:
        data = asdict(self)
        data['fonts'] = sorted(data['fonts'])
        data['plugins'] = sorted(data['plugins'])
        return hashlib.sha256(json.dumps(data, sort_keys=True, separators=(',', ':')).encode()).hexdigest()

    @classmethod
    def from_dict(cls, data: dict) -> 'DeviceFingerprint':
        known = {f for f in cls.__dataclass_fields__}
        values = {}
        for key, value in data.items():
            name = cls._ALIASES.get(key, key)
            if name in known:
                values[name] = tuple(value) if name in ('fonts', 'plugins') else value
        return cls(**values)


@dataclass(frozen=True)
class SyntheticFingerprint(FingerprintSource):
    value: str

    def fingerprint_hash(self) -> str:
        if _HEX64.match(self.value):
            return self.value
        return hashlib.sha256(self.value.encode()).hexdigest()


def fingerprint_from_payload(payload) -> FingerprintSource:
    """Accept a precomputed hash, ``{"hash": ...}`` or raw device attributes."""
    if isinstance(payload, FingerprintSource):
        return payload
    if isinstance(payload, str) and payload:
        return SyntheticFingerprint(payload.lower())
    if isinstance(payload, dict) and payload:
        if isinstance(payload.get('hash'), str) and payload['hash']:
            return SyntheticFingerprint(payload['hash'].lower())
        return DeviceFingerprint.from_dict(payload)
    raise ValueError("Device fingerprint is required")
