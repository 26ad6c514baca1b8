from __future__ import annotations

import copy
import sys
from pathlib import Path

import pytest

# Ensure src/ is on sys.path for `import tmistats` when the package isn't installed.
SRC_ROOT = str(Path(__file__).resolve().parents[1] / "src")
if SRC_ROOT not in sys.path:
    sys.path.insert(0, SRC_ROOT)

from tmistats.gateway import Stats, parse_stats  # noqa: E402

# Trimmed capture from a KVD21 gateway
GATEWAY_PAYLOAD = {
    "device": {
        "friendlyName": "5G Gateway",
        "hardwareVersion": "R01",
        "isEnabled": True,
        "isMeshSupported": True,
        "macId": "AA:BB:CC:DD:EE:FF",
        "manufacturer": "Arcadyan",
        "model": "KVD21",
        "name": "5G Gateway",
        "role": "gateway",
        "serial": "ABC1234567",
        "softwareVersion": "1.00.18",
        "type": "HSID",
        "updateState": "latest",
    },
    "signal": {
        "4g": {
            "bands": ["b66", "b2"],
            "bars": 4.0,
            "cid": 12,
            "eNBID": 310463,
            "rsrp": -95,
            "rsrq": -10,
            "rssi": -80,
            "sinr": 12,
        },
        "5g": {
            "bands": ["n41"],
            "bars": 3.0,
            "cid": 311,
            "gNBID": 1234567,
            "rsrp": -101,
            "rsrq": -11,
            "rssi": -86,
            "sinr": 7,
        },
        "generic": {
            "apn": "FBB.HOME",
            "hasIPv6": True,
            "registration": "registered",
            "roaming": False,
        },
    },
    "time": {
        "localTime": 1700000000,
        "localTimeZone": "<-08>+8",
        "upTime": 93621,
    },
}

SPEEDTEST_OUTPUT = """
{
    "type": "result",
    "timestamp": "2024-03-02T18:11:31Z",
    "ping": {
        "jitter": 3.021,
        "latency": 31.447,
        "low": 27.911,
        "high": 36.02
    },
    "download": {
        "bandwidth": 31256512,
        "bytes": 353112240,
        "elapsed": 11206,
        "latency": {
            "iqm": 88.731,
            "low": 30.128,
            "high": 312.772,
            "jitter": 21.409
        }
    },
    "upload": {
        "bandwidth": 4312851,
        "bytes": 50233824,
        "elapsed": 11902,
        "latency": {
            "iqm": 121.992,
            "low": 29.448,
            "high": 502.118,
            "jitter": 38.117
        }
    },
    "packetLoss": 0,
    "isp": "T-Mobile USA",
    "interface": {
        "internalIp": "192.168.12.150",
        "name": "en0",
        "macAddr": "AA:BB:CC:00:11:22",
        "isVpn": false,
        "externalIp": "172.58.0.1"
    },
    "server": {
        "id": 18531,
        "host": "speedtest.example.net",
        "port": 8080,
        "name": "Example Fiber",
        "location": "Seattle, WA",
        "country": "United States",
        "ip": "203.0.113.7"
    },
    "result": {
        "id": "0f4e1c3a-9a57-4a2e-8d7b-3f1c2b0a9e11",
        "url": "https://www.speedtest.net/result/c/0f4e1c3a-9a57-4a2e-8d7b-3f1c2b0a9e11",
        "persisted": true
    }
}
"""


def make_payload(**signal_updates) -> dict:
    """A copy of GATEWAY_PAYLOAD with per-generation overrides.

    ``make_payload(g4={"sinr": 3}, g5=None)`` changes 4g's sinr and drops 5g.
    """
    payload = copy.deepcopy(GATEWAY_PAYLOAD)
    for key, update in signal_updates.items():
        generation = {"g4": "4g", "g5": "5g"}[key]
        if update is None:
            payload["signal"].pop(generation, None)
        else:
            payload["signal"][generation].update(update)
    return payload


def make_stats(**signal_updates) -> Stats:
    return parse_stats(make_payload(**signal_updates))


@pytest.fixture
def gateway_payload() -> dict:
    return copy.deepcopy(GATEWAY_PAYLOAD)


@pytest.fixture
def speedtest_output() -> str:
    return SPEEDTEST_OUTPUT


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    # Keep a developer's real config and env out of the tests
    monkeypatch.setenv("TMI_STATS_CONFIG", str(tmp_path / "no-such-config.json"))
    monkeypatch.delenv("TMI_STATS_HOST", raising=False)
    monkeypatch.delenv("TMI_STATS_DB", raising=False)
