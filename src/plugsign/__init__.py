# -*- coding: utf-8 -*-
#
# Copyright (C) 2021-2022 by The Linux Foundation
# SPDX-License-Identifier: MIT-0
#
import sys
import os

import argparse
import hashlib
import hmac
import base64
import binascii
import getpass
import logging
import threading
import time
import tomllib

from types import MappingProxyType
from typing import Optional, List, Tuple, Dict, Any, Callable, Mapping, NamedTuple, Type
from io import BytesIO

logger: logging.Logger = logging.getLogger(__name__)

# Signature envelope
SIG_MARKER = b'//'
SIG_FIELD = b'signature'
SIG_PREFIX = SIG_MARKER + b' ' + SIG_FIELD + b'|'
MAX_SCAN_LINES = 50
# Longest line prefix considered when matching a signature line to a key
MAX_HEADER_LEN = 8 * 1024

PLUGIN_SUFFIX = '.plug.js'
PROTECTION_CONFIG_ENV = 'PLUGSIGN_PROTECTION_CONFIG'

MINISIGN_PROTOCOL = 'minisign'
SUPPORTED_PROTOCOLS: List[str] = [MINISIGN_PROTOCOL]

# Result and severity levels
RES_ALLOWED = 0
RES_REJECTED = 8
RES_MALFORMED = 16
RES_CONFIGERR = 32

# My version
__VERSION__ = '0.1.0'


class Error(Exception):
    """Base exception for plugsign errors.

    Args:
        message: Error description.
        errors: Optional list of detailed error messages.
    """

    errors: Optional[List[str]]

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors

    def __str__(self) -> str:
        s = super().__str__()
        if self.errors:
            s = '%s: (%s)' % (s, ', '.join(self.errors))
        return s


class SigningError(Error):
    """Raised when signing or loading a private key fails."""


class PasswordRequiredError(SigningError):
    """Raised when an encrypted private key is loaded without a password."""


class ConfigurationError(Error):
    """Raised when the trust configuration is invalid or missing."""


class UnsupportedProtocolError(Error):
    """Raised when a signing protocol is not known."""


class ValidationError(Error):
    """Raised when content cannot be checked for signatures."""


class MalformedSignatureError(ValidationError):
    """Raised when a signature line violates the envelope grammar."""


class ParsedSignature(NamedTuple):
    """One signature line found in the header of a plugin file.

    Attributes:
        protocol: Signing protocol identifier, e.g. ``minisign``.
        pubkey_b64: Public key exactly as encoded in the line.
        pubkey: Decoded public key (the protocol's text form of the key).
        sig_b64: Signature exactly as encoded in the line.
        signature: Decoded signature bytes.
        line: Original line bytes, without the trailing newline.
    """

    protocol: str
    pubkey_b64: str
    pubkey: bytes
    sig_b64: str
    signature: bytes
    line: bytes


class TrustedKey(NamedTuple):
    """Operator-approved public key and its metadata."""

    protocol: str
    pubkey: bytes
    owner: str
    info: Optional[str] = None


class Decision(NamedTuple):
    """Outcome of a trust policy check.

    Attributes:
        result: One of RES_ALLOWED, RES_REJECTED or RES_CONFIGERR.
        reason: Why the content was rejected, or who signed it.
        signer: The trusted key whose signature was checked, if any.
    """

    result: int
    reason: Optional[str] = None
    signer: Optional[TrustedKey] = None

    @property
    def allowed(self) -> bool:
        return self.result == RES_ALLOWED


class Minisign:
    """Minisign-compatible key and signature formats over Ed25519.

    Public keys are handled in their text form (base64 of the algorithm id,
    key id and raw Ed25519 key); signatures are the full four-line minisign
    signature text.
    """

    SIG_ALG = b'Ed'
    HASHED_SIG_ALG = b'ED'
    KDF_SCRYPT = b'Sc'
    KDF_NONE = b'\x00\x00'
    CKSUM_ALG = b'B2'
    KEYID_LEN = 8
    PUBKEY_LEN = 2 + 8 + 32
    SIG_LEN = 2 + 8 + 64
    SECKEY_LEN = 2 + 2 + 2 + 32 + 8 + 8 + 104
    UNTRUSTED = 'untrusted comment: '
    TRUSTED = 'trusted comment: '

    @staticmethod
    def keyid_hex(keyid: bytes) -> str:
        return '%016X' % int.from_bytes(keyid, 'little')

    @staticmethod
    def encode_public_key(keyid: bytes, verify_key: bytes) -> bytes:
        """Return the text form of a public key.

        Args:
            keyid: 8-byte key identifier.
            verify_key: Raw 32-byte Ed25519 public key.
        """
        return base64.b64encode(Minisign.SIG_ALG + keyid + verify_key)

    @staticmethod
    def decode_public_key(pubkey: bytes) -> Tuple[bytes, bytes]:
        """Parse the text form of a public key.

        Args:
            pubkey: Public key text, with or without the comment line.

        Returns:
            Tuple of (keyid, raw_ed25519_key).

        Raises:
            ValidationError: If the key is not a minisign public key.
        """
        lines = [x.strip() for x in pubkey.split(b'\n') if x.strip()]
        if lines and lines[0].startswith(Minisign.UNTRUSTED.encode()):
            lines.pop(0)
        if len(lines) != 1:
            raise ValidationError('invalid minisign public key')
        try:
            raw = base64.b64decode(lines[0], validate=True)
        except binascii.Error as ex:
            raise ValidationError('invalid minisign public key', errors=[str(ex)])
        if len(raw) != Minisign.PUBKEY_LEN:
            raise ValidationError('invalid minisign public key', errors=['wrong key length'])
        if raw[:2] != Minisign.SIG_ALG:
            raise ValidationError('invalid minisign public key', errors=['unknown algorithm'])
        return raw[2:10], raw[10:]

    @staticmethod
    def _scrypt_stream(password: str, salt: bytes, opslimit: int, memlimit: int) -> bytes:
        try:
            from nacl.pwhash import scrypt
        except ModuleNotFoundError:
            raise RuntimeError('This operation requires PyNaCl libraries')
        return scrypt.kdf(104, password.encode(), salt, opslimit=opslimit, memlimit=memlimit)

    @staticmethod
    def _checksum(keyid: bytes, seckey: bytes) -> bytes:
        return hashlib.blake2b(Minisign.SIG_ALG + keyid + seckey, digest_size=32).digest()

    @staticmethod
    def encode_secret_key(keyid: bytes, seed: bytes, password: Optional[str] = None,
                          opslimit: Optional[int] = None, memlimit: Optional[int] = None) -> bytes:
        """Serialize a private key into a minisign secret key file.

        Args:
            keyid: 8-byte key identifier.
            seed: 32-byte Ed25519 seed.
            password: Encrypt the key with scrypt if set.
            opslimit: scrypt ops limit, defaults to the sensitive profile.
            memlimit: scrypt memory limit, defaults to the sensitive profile.

        Returns:
            Secret key file contents.
        """
        try:
            from nacl.signing import SigningKey
            from nacl.pwhash import scrypt
            import nacl.utils
        except ModuleNotFoundError:
            raise RuntimeError('This operation requires PyNaCl libraries')

        sk = SigningKey(seed)
        seckey = bytes(sk) + sk.verify_key.encode()
        keynum = keyid + seckey + Minisign._checksum(keyid, seckey)
        if password:
            if opslimit is None:
                opslimit = scrypt.OPSLIMIT_SENSITIVE
            if memlimit is None:
                memlimit = scrypt.MEMLIMIT_SENSITIVE
            salt = nacl.utils.random(32)
            stream = Minisign._scrypt_stream(password, salt, opslimit, memlimit)
            keynum = bytes(a ^ b for a, b in zip(keynum, stream))
            kdf = Minisign.KDF_SCRYPT
        else:
            salt = bytes(32)
            opslimit = memlimit = 0
            kdf = Minisign.KDF_NONE

        raw = (Minisign.SIG_ALG + kdf + Minisign.CKSUM_ALG + salt
               + opslimit.to_bytes(8, 'little') + memlimit.to_bytes(8, 'little') + keynum)
        comment = 'minisign encrypted secret key' if password else 'minisign secret key'
        return b'%s%s\n%s\n' % (Minisign.UNTRUSTED.encode(), comment.encode(), base64.b64encode(raw))

    @staticmethod
    def decode_secret_key(keydata: bytes, password: Optional[str]) -> Tuple[bytes, bytes]:
        """Load a minisign secret key file.

        Args:
            keydata: Secret key file contents.
            password: Password for encrypted keys.

        Returns:
            Tuple of (keyid, ed25519_seed).

        Raises:
            PasswordRequiredError: If the key is encrypted and no password was given.
            SigningError: If the key cannot be loaded or decrypted.
        """
        lines = [x.strip() for x in keydata.split(b'\n') if x.strip()]
        if lines and lines[0].startswith(Minisign.UNTRUSTED.encode()):
            lines.pop(0)
        if not lines:
            raise SigningError('invalid minisign private key')
        try:
            raw = base64.b64decode(lines[0], validate=True)
        except binascii.Error as ex:
            raise SigningError('invalid minisign private key', errors=[str(ex)])
        if len(raw) != Minisign.SECKEY_LEN:
            raise SigningError('invalid minisign private key', errors=['wrong key length'])

        sigalg, kdf, cksumalg = raw[0:2], raw[2:4], raw[4:6]
        if sigalg != Minisign.SIG_ALG or cksumalg != Minisign.CKSUM_ALG:
            raise SigningError('unsupported minisign private key algorithm')
        salt = raw[6:38]
        opslimit = int.from_bytes(raw[38:46], 'little')
        memlimit = int.from_bytes(raw[46:54], 'little')
        keynum = raw[54:]
        if kdf == Minisign.KDF_SCRYPT:
            if not password:
                raise PasswordRequiredError('private key is encrypted, password required')
            stream = Minisign._scrypt_stream(password, salt, opslimit, memlimit)
            keynum = bytes(a ^ b for a, b in zip(keynum, stream))
        elif kdf != Minisign.KDF_NONE:
            raise SigningError('unsupported minisign key derivation function')

        keyid, seckey, cksum = keynum[:8], keynum[8:72], keynum[72:]
        if not hmac.compare_digest(cksum, Minisign._checksum(keyid, seckey)):
            raise SigningError('failed to decrypt private key (wrong password?)')
        return keyid, seckey[:32]

    @staticmethod
    def sign(payload: bytes, keyid: bytes, seed: bytes, trusted_comment: Optional[str] = None) -> bytes:
        """Create a prehashed minisign signature over payload.

        Args:
            payload: Bytes to sign.
            keyid: 8-byte key identifier.
            seed: 32-byte Ed25519 seed.
            trusted_comment: Signed comment, defaults to the signing timestamp.

        Returns:
            Minisign signature text.
        """
        try:
            from nacl.signing import SigningKey
        except ModuleNotFoundError:
            raise RuntimeError('This operation requires PyNaCl libraries')

        if trusted_comment is None:
            trusted_comment = 'timestamp:%d' % int(time.time())
        sk = SigningKey(seed)
        digest = hashlib.blake2b(payload, digest_size=64).digest()
        sig = sk.sign(digest).signature
        global_sig = sk.sign(sig + trusted_comment.encode()).signature
        lines = [
            '%ssignature from private key: %s' % (Minisign.UNTRUSTED, Minisign.keyid_hex(keyid)),
            base64.b64encode(Minisign.HASHED_SIG_ALG + keyid + sig).decode(),
            '%s%s' % (Minisign.TRUSTED, trusted_comment),
            base64.b64encode(global_sig).decode(),
        ]
        return ('\n'.join(lines) + '\n').encode()

    @staticmethod
    def verify(pubkey: bytes, payload: bytes, sigdata: bytes) -> bool:
        """Check a minisign signature.

        Args:
            pubkey: Public key text.
            payload: Signed bytes.
            sigdata: Minisign signature text.

        Returns:
            True if both the signature and its trusted comment verify.
        """
        try:
            from nacl.signing import VerifyKey
            from nacl.exceptions import BadSignatureError
        except ModuleNotFoundError:
            raise RuntimeError('This operation requires PyNaCl libraries')

        try:
            keyid, rawkey = Minisign.decode_public_key(pubkey)
        except ValidationError as ex:
            logger.debug('Cannot use public key: %s', ex)
            return False

        try:
            lines = [x[:-1] if x.endswith('\r') else x for x in sigdata.decode().split('\n')]
        except UnicodeDecodeError:
            logger.debug('Signature is not minisign text')
            return False
        if len(lines) < 4 or not lines[0].startswith(Minisign.UNTRUSTED) or not lines[2].startswith(Minisign.TRUSTED):
            logger.debug('Signature is not minisign text')
            return False
        try:
            sig = base64.b64decode(lines[1].strip(), validate=True)
            global_sig = base64.b64decode(lines[3].strip(), validate=True)
        except binascii.Error:
            logger.debug('Invalid base64 in minisign signature')
            return False
        if len(sig) != Minisign.SIG_LEN or len(global_sig) != 64:
            logger.debug('Wrong minisign signature length')
            return False

        algo, sigkeyid, rawsig = sig[:2], sig[2:10], sig[10:]
        if sigkeyid != keyid:
            logger.debug('Signature key id %s does not match public key %s',
                         Minisign.keyid_hex(sigkeyid), Minisign.keyid_hex(keyid))
            return False
        if algo == Minisign.HASHED_SIG_ALG:
            message = hashlib.blake2b(payload, digest_size=64).digest()
        elif algo == Minisign.SIG_ALG:
            message = payload
        else:
            logger.debug('Unknown minisign signature algorithm')
            return False

        trusted_comment = lines[2][len(Minisign.TRUSTED):].encode()
        vk = VerifyKey(rawkey)
        try:
            vk.verify(message, rawsig)
            vk.verify(rawsig + trusted_comment, global_sig)
        except BadSignatureError:
            logger.debug('Minisign signature does not verify')
            return False
        return True


class Signer:
    """Signing capability bound to one loaded private key.

    Subclasses implement a single protocol and are resolved once, when the
    key is loaded (see :func:`load_signer`).
    """

    protocol: str = ''

    @classmethod
    def from_bytes(cls, keydata: bytes, password: Optional[str] = None) -> 'Signer':
        """Load a private key file for this protocol."""
        raise NotImplementedError

    def get_public_key(self) -> bytes:
        """Return the protocol's text form of the public key."""
        raise NotImplementedError

    def sign(self, payload: bytes) -> bytes:
        """Return signature bytes covering payload."""
        raise NotImplementedError

    def sign_plugin(self, content: bytes) -> bytes:
        """Add or replace this key's signature line in content."""
        return sign_plugin(content, self.protocol, self.sign, self.get_public_key())


class MinisignSigner(Signer):
    """Minisign signing key.

    Args:
        keyid: 8-byte key identifier.
        seed: 32-byte Ed25519 seed.
    """

    protocol = MINISIGN_PROTOCOL
    keyid: bytes

    def __init__(self, keyid: bytes, seed: bytes):
        try:
            from nacl.signing import SigningKey
        except ModuleNotFoundError:
            raise RuntimeError('This operation requires PyNaCl libraries')
        self.keyid = keyid
        self._seed = seed
        self._pubkey = Minisign.encode_public_key(keyid, SigningKey(seed).verify_key.encode())

    @classmethod
    def generate(cls) -> 'MinisignSigner':
        try:
            from nacl.signing import SigningKey
            import nacl.utils
        except ModuleNotFoundError:
            raise RuntimeError('This operation requires PyNaCl libraries')
        return cls(nacl.utils.random(Minisign.KEYID_LEN), bytes(SigningKey.generate()))

    @classmethod
    def from_bytes(cls, keydata: bytes, password: Optional[str] = None) -> 'MinisignSigner':
        keyid, seed = Minisign.decode_secret_key(keydata, password)
        return cls(keyid, seed)

    def as_bytes(self, password: Optional[str] = None,
                 opslimit: Optional[int] = None, memlimit: Optional[int] = None) -> bytes:
        """Return the secret key file contents, encrypted if password is set."""
        return Minisign.encode_secret_key(self.keyid, self._seed, password, opslimit=opslimit, memlimit=memlimit)

    def public_key_file(self) -> bytes:
        return b'%sminisign public key %s\n%s\n' % (Minisign.UNTRUSTED.encode(),
                                                   Minisign.keyid_hex(self.keyid).encode(), self._pubkey)

    def get_public_key(self) -> bytes:
        return self._pubkey

    def sign(self, payload: bytes) -> bytes:
        return Minisign.sign(payload, self.keyid, self._seed)


SIGNERS: Dict[str, Type[Signer]] = {
    MINISIGN_PROTOCOL: MinisignSigner,
}

VERIFIERS: Dict[str, Callable[[bytes, bytes, bytes], bool]] = {
    MINISIGN_PROTOCOL: Minisign.verify,
}


def load_signer(protocol: str, keydata: bytes, password: Optional[str] = None) -> Signer:
    """Load a private key as a signing capability for protocol.

    Args:
        protocol: Signing protocol identifier.
        keydata: Private key file contents.
        password: Password for encrypted keys.

    Returns:
        Signer bound to the loaded key.

    Raises:
        UnsupportedProtocolError: If the protocol is not known.
        PasswordRequiredError: If the key needs a password.
        SigningError: If the key cannot be loaded.
    """
    signer_cls = SIGNERS.get(protocol)
    if signer_cls is None:
        raise UnsupportedProtocolError('unsupported signing protocol: %s' % protocol)
    return signer_cls.from_bytes(keydata, password)


def validate_public_key(protocol: str, pubkey: bytes) -> bytes:
    """Check that pubkey is a structurally valid public key for protocol.

    Returns:
        The key in the exact text form signature lines carry, without
        comments or surrounding whitespace.

    Raises:
        UnsupportedProtocolError: If the protocol is not known.
        ValidationError: If the key is invalid.
    """
    if protocol == MINISIGN_PROTOCOL:
        return Minisign.encode_public_key(*Minisign.decode_public_key(pubkey))
    raise UnsupportedProtocolError('unsupported signing protocol: %s' % protocol)


def verify_signature(protocol: str, pubkey: bytes, payload: bytes, signature: bytes) -> bool:
    """Cryptographically check signature over payload.

    Args:
        protocol: Signing protocol identifier.
        pubkey: Public key in the protocol's text form.
        payload: Signed bytes, with all signature lines removed.
        signature: Signature bytes.

    Raises:
        UnsupportedProtocolError: If the protocol is not known.
    """
    verifier = VERIFIERS.get(protocol)
    if verifier is None:
        raise UnsupportedProtocolError('unsupported signing protocol: %s' % protocol)
    return verifier(pubkey, payload, signature)


def _read_window(content: bytes) -> Tuple[List[bytes], bytes]:
    # Lines keep their terminators, so joining them gives back the original bytes
    lines = list()
    with BytesIO(content) as fh:
        while len(lines) < MAX_SCAN_LINES:
            line = fh.readline()
            if not len(line):
                break
            lines.append(line)
        rest = fh.read()
    return lines, rest


def is_signature_line(line: bytes) -> bool:
    return line.strip().startswith(SIG_PREFIX)


def parse_signature_line(line: bytes) -> Optional[ParsedSignature]:
    """Parse one line of a plugin header.

    Args:
        line: Raw line, with or without its trailing newline.

    Returns:
        ParsedSignature, or None if this is not a signature line.

    Raises:
        MalformedSignatureError: If the line looks like a signature but
            does not follow the signature grammar.
    """
    trimmed = line.strip()
    if not trimmed.startswith(SIG_PREFIX):
        return None

    comment = trimmed[len(SIG_MARKER):].strip()
    parts = comment.split(b':', 1)
    if len(parts) != 2:
        raise MalformedSignatureError('invalid signature format: missing colon separator')

    fields = parts[0].strip().split(b'|')
    if len(fields) != 3:
        raise MalformedSignatureError('invalid signature format: expected 3 pipe-separated fields')
    if fields[0] != SIG_FIELD:
        raise MalformedSignatureError("invalid signature format: must start with 'signature'")

    bprotocol = fields[1].strip()
    if not bprotocol:
        raise MalformedSignatureError('invalid signature format: missing signing protocol')
    try:
        protocol = bprotocol.decode('ascii')
    except UnicodeDecodeError:
        raise MalformedSignatureError('invalid signature format: signing protocol must be ascii')

    pubkey_b64 = fields[2].strip()
    try:
        pubkey = base64.b64decode(pubkey_b64, validate=True)
    except binascii.Error as ex:
        raise MalformedSignatureError('invalid base64 public key', errors=[str(ex)])
    if not pubkey:
        raise MalformedSignatureError('invalid signature format: missing public key')

    sig_b64 = parts[1].strip()
    try:
        signature = base64.b64decode(sig_b64, validate=True)
    except binascii.Error as ex:
        raise MalformedSignatureError('invalid base64 signature', errors=[str(ex)])

    if line.endswith(b'\n'):
        line = line[:-1]
    return ParsedSignature(protocol, pubkey_b64.decode(), pubkey, sig_b64.decode(), signature, line)


def parse_signatures(content: bytes) -> List[ParsedSignature]:
    """Extract all signatures from the header of a plugin file.

    Only the first MAX_SCAN_LINES lines are examined. Signature lines look
    like this::

        // signature|<protocol>|<base64-pubkey>: <base64-signature>

    Args:
        content: Plugin file contents.

    Returns:
        Signatures in the order they appear; empty if there are none.

    Raises:
        ValidationError: If content is empty.
        MalformedSignatureError: If any signature line is malformed.
    """
    if not len(content):
        raise ValidationError('content is empty')

    lines, _ = _read_window(content)
    sigs = list()
    for line in lines:
        ps = parse_signature_line(line)
        if ps is not None:
            sigs.append(ps)
    return sigs


def format_signature_line(protocol: str, pubkey: bytes, signature: bytes) -> bytes:
    """Create a signature line, including the trailing newline."""
    return b'// signature|%s|%s: %s\n' % (protocol.encode(), base64.b64encode(pubkey), base64.b64encode(signature))


def strip_signatures(content: bytes) -> bytes:
    """Remove all signature lines from content.

    Everything else is kept byte for byte, including whether the content
    ends with a newline. If the header cannot be parsed, content is
    returned unchanged.

    Args:
        content: Plugin file contents.

    Returns:
        The signed payload.
    """
    try:
        sigs = parse_signatures(content)
    except ValidationError as ex:
        logger.debug('Not stripping signatures: %s', ex)
        return content
    if not sigs:
        return content

    lines, rest = _read_window(content)
    stripped = b''.join(line for line in lines if not is_signature_line(line)) + rest
    if not content.endswith(b'\n') and stripped.endswith(b'\n'):
        stripped = stripped[:-1]
    return stripped


def strip_matching_signature(content: bytes, protocol: str, pubkey: bytes) -> Tuple[bytes, bytes]:
    """Split the leading signature block from the rest of content.

    Walks the leading signature lines, dropping the ones made with
    (protocol, pubkey) and collecting all others. The first line that is
    not a signature ends the block.

    Args:
        content: Plugin file contents.
        protocol: Signing protocol of the signature to drop.
        pubkey: Decoded public key of the signature to drop.

    Returns:
        Tuple of (remainder, preserved_signature_lines).
    """
    pattern = b'%s|%s|%s:' % (SIG_FIELD, protocol.encode(), base64.b64encode(pubkey))
    preserved = list()
    with BytesIO(content) as fh:
        for _ in range(MAX_SCAN_LINES):
            at = fh.tell()
            line = fh.readline()
            if not len(line):
                break
            trimmed = line.strip()[:MAX_HEADER_LEN]
            if not trimmed.startswith(SIG_PREFIX):
                fh.seek(at)
                break
            if trimmed[len(SIG_MARKER):].lstrip().startswith(pattern):
                logger.debug('Dropping previous %s signature', protocol)
                continue
            if line.endswith(b'\n'):
                line = line[:-1]
            preserved.append(line + b'\n')
        remainder = fh.read()

    return remainder, b''.join(preserved)


def sign_plugin(content: bytes, protocol: str, sign_fn: Callable[[bytes], bytes], pubkey: bytes) -> bytes:
    """Sign plugin content, keeping signatures made by other keys.

    Any previous signature by the same (protocol, pubkey) is replaced. The
    signature covers the content with the whole signature block removed,
    and the new signature line is placed first.

    Args:
        content: Plugin file contents, signed or not.
        protocol: Signing protocol identifier.
        sign_fn: Callable returning signature bytes for a payload.
        pubkey: Public key in the protocol's text form.

    Returns:
        Signed content.
    """
    remainder, preserved = strip_matching_signature(content, protocol, pubkey)
    signature = sign_fn(remainder)
    return format_signature_line(protocol, pubkey, signature) + preserved + remainder


class TrustRegistry:
    """Read-only registry of trusted public keys.

    Args:
        trusted_keys: Mapping of protocol to a mapping of public key text to
            metadata with a required ``owner`` and an optional ``info``.

    Raises:
        ConfigurationError: If any entry is invalid.
    """

    __slots__ = ('_keys',)

    _keys: Mapping[str, Mapping[bytes, TrustedKey]]

    def __init__(self, trusted_keys: Optional[Mapping[str, Any]] = None):
        keys: Dict[str, Mapping[bytes, TrustedKey]] = dict()
        if trusted_keys is None:
            trusted_keys = dict()
        if not isinstance(trusted_keys, Mapping):
            raise ConfigurationError('trusted public keys must be a table')

        for protocol, pubkeys in trusted_keys.items():
            if not protocol:
                raise ConfigurationError('signing protocol cannot be empty')
            if protocol not in SUPPORTED_PROTOCOLS:
                raise ConfigurationError('unknown signing protocol: %s' % protocol)
            if not isinstance(pubkeys, Mapping):
                raise ConfigurationError('trusted keys for protocol %s must be a table' % protocol)

            entries: Dict[bytes, TrustedKey] = dict()
            for pubkey, meta in pubkeys.items():
                if not pubkey:
                    raise ConfigurationError('public key cannot be empty')
                try:
                    canonical = validate_public_key(protocol, pubkey.encode())
                except ValidationError as ex:
                    raise ConfigurationError('invalid public key for protocol %s' % protocol, errors=[str(ex)])
                if not isinstance(meta, Mapping):
                    raise ConfigurationError('metadata must be a table for public key: %s' % pubkey)
                owner = meta.get('owner')
                if not isinstance(owner, str) or not owner.strip():
                    raise ConfigurationError('owner metadata cannot be empty for public key: %s' % pubkey)
                info = meta.get('info')
                if info is not None and not isinstance(info, str):
                    raise ConfigurationError('info metadata must be a string for public key: %s' % pubkey)
                if canonical in entries:
                    raise ConfigurationError('duplicate public key for protocol %s: %s' % (protocol, pubkey))
                entries[canonical] = TrustedKey(protocol, canonical, owner, info)

            keys[protocol] = MappingProxyType(entries)

        self._keys = MappingProxyType(keys)

    def lookup(self, protocol: str, pubkey: bytes) -> Optional[TrustedKey]:
        """Return the trusted key entry for (protocol, pubkey), if any."""
        pubkeys = self._keys.get(protocol)
        if not pubkeys:
            return None
        return pubkeys.get(pubkey)

    @property
    def protocols(self) -> List[str]:
        return list(self._keys)

    def __contains__(self, item: Tuple[str, bytes]) -> bool:
        return self.lookup(*item) is not None

    def __len__(self) -> int:
        return sum(len(x) for x in self._keys.values())


class ProtectionPolicy(NamedTuple):
    """Server-side plugin protection settings."""

    registry: TrustRegistry
    allow_unsigned: bool = False


def policy_from_config(config: Mapping[str, Any]) -> ProtectionPolicy:
    """Build a protection policy from a parsed configuration mapping.

    Args:
        config: Mapping with ``trusted_public_keys`` and
            ``allow_unsigned_plugins`` entries.

    Raises:
        ConfigurationError: If the configuration is invalid.
    """
    allow_unsigned = config.get('allow_unsigned_plugins', False)
    if not isinstance(allow_unsigned, bool):
        raise ConfigurationError('allow_unsigned_plugins must be a boolean')
    registry = TrustRegistry(config.get('trusted_public_keys'))
    logger.debug('Loaded %d trusted public keys', len(registry))
    return ProtectionPolicy(registry, allow_unsigned)


def load_protection_config(path: str) -> ProtectionPolicy:
    """Load a TOML protection config file.

    Args:
        path: Path to the config file.

    Raises:
        ConfigurationError: If the file cannot be read, parsed or validated.
    """
    try:
        with open(path, 'rb') as fh:
            config = tomllib.load(fh)
    except OSError as ex:
        raise ConfigurationError('failed to read protection config file %s' % path, errors=[str(ex)])
    except tomllib.TOMLDecodeError as ex:
        raise ConfigurationError('failed to parse protection config file %s' % path, errors=[str(ex)])
    return policy_from_config(config)


_POLICY_LOCK = threading.Lock()
_POLICY: Optional[ProtectionPolicy] = None
_POLICY_LOADED = False


def get_protection_policy() -> Optional[ProtectionPolicy]:
    """Return the process-wide protection policy.

    Loaded on first call from the file named by PLUGSIGN_PROTECTION_CONFIG;
    later calls return the same object. Returns None if the variable is
    not set.

    Raises:
        ConfigurationError: If the configured file is invalid.
    """
    global _POLICY, _POLICY_LOADED
    with _POLICY_LOCK:
        if not _POLICY_LOADED:
            cfgpath = os.environ.get(PROTECTION_CONFIG_ENV)
            if cfgpath:
                logger.debug('Loading protection config from %s', cfgpath)
                _POLICY = load_protection_config(cfgpath)
            _POLICY_LOADED = True
    return _POLICY


def evaluate(content: bytes,
             signatures: List[ParsedSignature],
             registry: Optional[TrustRegistry],
             require_signed: bool) -> Decision:
    """Decide whether signed content comes from a trusted key.

    Signatures are considered in file order. The first one made with a
    trusted key decides the outcome: a bad signature under a trusted key is
    never bypassed by another signature.

    Args:
        content: Full plugin file contents.
        signatures: Signatures parsed from content.
        registry: Trusted keys, or None if none are configured.
        require_signed: Reject content without signatures.

    Returns:
        Decision with RES_ALLOWED, RES_REJECTED or RES_CONFIGERR.
    """
    if registry is None and require_signed:
        return Decision(RES_CONFIGERR, 'protection config not loaded')

    if not signatures:
        if require_signed:
            return Decision(RES_REJECTED, 'missing signature')
        logger.debug('Content is not signed, signature not required')
        return Decision(RES_ALLOWED)

    if registry is None:
        return Decision(RES_CONFIGERR, 'protection config not loaded')

    for ps in signatures:
        tk = registry.lookup(ps.protocol, ps.pubkey)
        if tk is None:
            logger.debug('Skipping signature by untrusted %s key %s', ps.protocol, ps.pubkey_b64)
            continue

        logger.debug('Found signature by trusted key of %s', tk.owner)
        try:
            valid = verify_signature(ps.protocol, ps.pubkey, strip_signatures(content), ps.signature)
        except UnsupportedProtocolError as ex:
            return Decision(RES_REJECTED, str(ex), tk)
        if valid:
            return Decision(RES_ALLOWED, 'signed by %s' % tk.owner, tk)
        return Decision(RES_REJECTED, 'signature verification failed', tk)

    return Decision(RES_REJECTED, 'no signature from a trusted public key')


def verify_plugin(content: bytes, registry: Optional[TrustRegistry], require_signed: bool) -> Decision:
    """Parse signatures from content and evaluate them.

    Raises:
        ValidationError: If content is empty.
        MalformedSignatureError: If a signature line is malformed.
    """
    return evaluate(content, parse_signatures(content), registry, require_signed)


def is_plugin_path(path: str) -> bool:
    return path.endswith(PLUGIN_SUFFIX)


def protect_file(path: str, data: bytes, policy: Optional[ProtectionPolicy]) -> Decision:
    """Check a file about to be served or stored.

    Only plugin files are checked, and only when a policy is configured.

    Args:
        path: File path, used to recognize plugins.
        data: File contents.
        policy: Active protection policy, or None.

    Raises:
        ValidationError: If the plugin's signature block is malformed.
    """
    if policy is None or not is_plugin_path(path):
        return Decision(RES_ALLOWED)
    decision = verify_plugin(data, policy.registry, not policy.allow_unsigned)
    logger.debug('%s: result=%s reason=%s', path, decision.result, decision.reason)
    return decision


def _read_plugin_file(path: str) -> bytes:
    with open(path, 'rb') as fh:
        content = fh.read()
    if not len(content):
        raise SigningError('plugin file is empty')
    return content


def cmd_sign(cmdargs: argparse.Namespace) -> None:
    plugfile = cmdargs.plugfile
    outfile = cmdargs.output if cmdargs.output else plugfile

    if not os.path.exists(plugfile):
        logger.critical('E: plugin file not found: %s', plugfile)
        sys.exit(1)

    try:
        content = _read_plugin_file(plugfile)
        with open(cmdargs.keyfile, 'rb') as fh:
            keydata = fh.read()
    except (IOError, SigningError) as ex:
        logger.critical('E: %s', ex)
        sys.exit(1)

    try:
        try:
            signer = load_signer(cmdargs.protocol, keydata, cmdargs.password)
        except PasswordRequiredError:
            password = getpass.getpass('Enter private key password: ')
            signer = load_signer(cmdargs.protocol, keydata, password)
        signed = signer.sign_plugin(content)
    except (SigningError, UnsupportedProtocolError) as ex:
        logger.critical('E: %s', ex)
        sys.exit(1)

    if outfile == plugfile and not cmdargs.force:
        sys.stderr.write('Will overwrite %s. Press Enter to continue or Ctrl+C to cancel...' % plugfile)
        sys.stderr.flush()
        try:
            input()
        except (KeyboardInterrupt, EOFError):
            sys.stderr.write('\n')
            logger.critical('E: Aborted')
            sys.exit(1)

    try:
        with open(outfile, 'wb') as fh:
            fh.write(signed)
    except IOError as ex:
        logger.critical('E: failed to write signed plugin to %s: %s', outfile, ex)
        sys.exit(1)

    logger.critical('Successfully signed plugin: %s', os.path.abspath(outfile))


def cmd_verify(cmdargs: argparse.Namespace) -> None:
    try:
        if cmdargs.config:
            policy = load_protection_config(cmdargs.config)
        else:
            policy = get_protection_policy()
    except ConfigurationError as ex:
        logger.critical('E: %s', ex)
        sys.exit(RES_CONFIGERR)

    registry = policy.registry if policy else None
    allow_unsigned = cmdargs.allow_unsigned or (policy is not None and policy.allow_unsigned)

    highest_err = RES_ALLOWED
    for fn in cmdargs.plugfile:
        try:
            with open(fn, 'rb') as fh:
                content = fh.read()
            decision = verify_plugin(content, registry, not allow_unsigned)
        except IOError as ex:
            highest_err = max(highest_err, RES_MALFORMED)
            logger.critical(' ERROR | %s | %s', fn, ex)
            continue
        except ValidationError as ex:
            highest_err = max(highest_err, RES_MALFORMED)
            logger.critical(' ERROR | %s | %s', fn, ex)
            continue

        highest_err = max(highest_err, decision.result)
        if decision.result == RES_ALLOWED:
            logger.critical('  PASS | %s', fn)
            if decision.signer:
                logger.info('       | owner: %s', decision.signer.owner)
                if decision.signer.info:
                    logger.info('       | info: %s', decision.signer.info)
            else:
                logger.info('       | not signed')
        elif decision.result == RES_CONFIGERR:
            logger.critical('CONFIG | %s | %s', fn, decision.reason)
        else:
            logger.critical('REJECT | %s | %s', fn, decision.reason)

    sys.exit(highest_err)


def cmd_genkey(cmdargs: argparse.Namespace) -> None:
    skey = '%s.key' % cmdargs.output
    pkey = '%s.pub' % cmdargs.output
    if os.path.exists(skey) and not cmdargs.force:
        logger.critical('Key already exists: %s', skey)
        logger.critical('Use a different -o or pass -f to overwrite it')
        raise RuntimeError('Key already exists')

    password = None
    if not cmdargs.unencrypted:
        password = getpass.getpass('Password for the new key: ')
        if password != getpass.getpass('Password (one more time): '):
            logger.critical('E: Passwords do not match')
            sys.exit(1)
        if not password:
            logger.critical('E: Empty password, use -W for an unencrypted key')
            sys.exit(1)

    logger.critical('Generating a new minisign keypair')
    signer = MinisignSigner.generate()

    # Make sure we write it as 0600
    def priv_opener(path: str, flags: int) -> int:
        return os.open(path, flags, 0o0600)

    with open(skey, 'wb', opener=priv_opener) as fh:
        fh.write(signer.as_bytes(password))
        logger.critical('Wrote: %s', skey)

    with open(pkey, 'wb') as fh:
        fh.write(signer.public_key_file())
        logger.critical('Wrote: %s', pkey)

    logger.critical('Ask the server operators to add the following to their protection config:')
    logger.critical('---')
    logger.critical('[trusted_public_keys.%s]', MINISIGN_PROTOCOL)
    logger.critical('"%s" = { owner = "your name" }', signer.get_public_key().decode())
    logger.critical('---')


def command() -> None:
    parser = argparse.ArgumentParser(
        prog='plugsign',
        description='Sign plugin files and check them against trusted keys',
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    parser.add_argument('-v', '--verbose', action='store_true', default=False,
                        help='Be a bit more verbose')
    parser.add_argument('-d', '--debug', action='store_true', default=False,
                        help='Show debugging output')
    parser.add_argument('--version', action='version', version=__VERSION__)

    subparsers = parser.add_subparsers(help='sub-command help', dest='subcmd')

    sp_sign = subparsers.add_parser('sign', help='Add a signature to a plugin file')
    sp_sign.add_argument('plugfile', help='Plugin file to sign')
    sp_sign.add_argument('-k', '--key', dest='keyfile', required=True,
                         help='Path to the private key file')
    sp_sign.add_argument('-p', '--password', default=None,
                         help='Private key password (prompts if not provided)')
    sp_sign.add_argument('-o', '--output', default=None,
                         help='Output file path (default: overwrite input file)')
    sp_sign.add_argument('-f', '--force', action='store_true', default=False,
                         help='Skip overwrite confirmation')
    sp_sign.add_argument('-r', '--protocol', default=MINISIGN_PROTOCOL, choices=SUPPORTED_PROTOCOLS,
                         help='Signing protocol to use')
    sp_sign.set_defaults(func=cmd_sign)

    sp_ver = subparsers.add_parser('verify', help='Check plugin files against trusted keys')
    sp_ver.add_argument('plugfile', nargs='+', help='Plugin files to check')
    sp_ver.add_argument('-c', '--config', default=None,
                        help='Protection config file (default: $%s)' % PROTECTION_CONFIG_ENV)
    sp_ver.add_argument('--allow-unsigned', dest='allow_unsigned', action='store_true', default=False,
                        help='Accept plugins without any signature')
    sp_ver.set_defaults(func=cmd_verify)

    sp_gen = subparsers.add_parser('genkey', help='Generate a new minisign keypair')
    sp_gen.add_argument('-o', '--output', default='plugsign',
                        help='Path prefix for the .key and .pub files')
    sp_gen.add_argument('-W', '--unencrypted', action='store_true', default=False,
                        help='Do not encrypt the private key')
    sp_gen.add_argument('-f', '--force', action='store_true', default=False,
                        help='Overwrite any existing keys, if found')
    sp_gen.set_defaults(func=cmd_genkey)

    _args = parser.parse_args()

    logger.setLevel(logging.DEBUG)

    ch = logging.StreamHandler()
    formatter = logging.Formatter('%(message)s')
    ch.setFormatter(formatter)

    if _args.verbose:
        ch.setLevel(logging.INFO)
    elif _args.debug:
        ch.setLevel(logging.DEBUG)
    else:
        ch.setLevel(logging.CRITICAL)

    logger.addHandler(ch)

    if 'func' not in _args:
        parser.print_help()
        sys.exit(1)

    try:
        _args.func(_args)
    except RuntimeError:
        sys.exit(1)


if __name__ == '__main__':
    command()
