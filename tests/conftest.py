import base64
import pytest

import plugsign
from plugsign import MinisignSigner, TrustRegistry, MINISIGN_PROTOCOL, PROTECTION_CONFIG_ENV

from typing import Callable, Dict, List


@pytest.fixture
def sample_plugin_bytes() -> bytes:
    """A small unsigned plugin."""
    return b"""// A sample plugin
export function hello() {
  console.log('hello world');
}
"""


@pytest.fixture
def signer() -> MinisignSigner:
    """A freshly generated minisign key."""
    return MinisignSigner.generate()


@pytest.fixture
def signers() -> List[MinisignSigner]:
    """Three distinct minisign keys."""
    return [MinisignSigner.generate() for _ in range(3)]


@pytest.fixture
def make_registry() -> Callable[..., TrustRegistry]:
    """Build a registry trusting the given signers, owner names from kwargs."""
    def _make(**owners: MinisignSigner) -> TrustRegistry:
        pubkeys: Dict[str, Dict[str, str]] = dict()
        for owner, s in owners.items():
            pubkeys[s.get_public_key().decode()] = {'owner': owner}
        return TrustRegistry({MINISIGN_PROTOCOL: pubkeys})
    return _make


@pytest.fixture
def corrupt() -> Callable[[bytes], bytes]:
    """Flip one bit in the signature of a minisign signature text."""
    def _corrupt(sigtext: bytes) -> bytes:
        lines = sigtext.split(b'\n')
        raw = bytearray(base64.b64decode(lines[1]))
        raw[-1] ^= 0x01
        lines[1] = base64.b64encode(bytes(raw))
        return b'\n'.join(lines)
    return _corrupt


@pytest.fixture
def reset_policy(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    """Forget any loaded protection policy and unset its environment variable.

    Returns the monkeypatch so tests can point the variable at a config.
    """
    monkeypatch.setattr(plugsign, '_POLICY_LOADED', False)
    monkeypatch.setattr(plugsign, '_POLICY', None)
    monkeypatch.delenv(PROTECTION_CONFIG_ENV, raising=False)
    return monkeypatch
