import builtins
import getpass
import os
import stat
import sys

import pytest

from nacl.pwhash import scrypt

import plugsign
from plugsign import (MinisignSigner, parse_signatures, strip_signatures, verify_signature, load_signer,
                      Minisign, RES_ALLOWED, RES_REJECTED, RES_MALFORMED, RES_CONFIGERR, PROTECTION_CONFIG_ENV)

from pathlib import Path
from typing import List, Optional


def run_command(monkeypatch: pytest.MonkeyPatch, args: List[str]) -> Optional[int]:
    """Run the plugsign command line, returning the exit code if it exited."""
    monkeypatch.setattr(sys, 'argv', ['plugsign'] + args)
    try:
        plugsign.command()
    except SystemExit as ex:
        return ex.code  # type: ignore[return-value]
    return None


@pytest.fixture(autouse=True)
def fresh_state(reset_policy: pytest.MonkeyPatch) -> None:
    # command() adds a stream handler on every run
    reset_policy.setattr(plugsign.logger, 'handlers', [])


@pytest.fixture
def plugfile(tmp_path: Path, sample_plugin_bytes: bytes) -> Path:
    path = tmp_path / 'hello.plug.js'
    path.write_bytes(sample_plugin_bytes)
    return path


@pytest.fixture
def keyfile(tmp_path: Path, signer: MinisignSigner) -> Path:
    path = tmp_path / 'test.key'
    path.write_bytes(signer.as_bytes())
    return path


class TestSignCommand:

    def test_sign_in_place(self, monkeypatch: pytest.MonkeyPatch, plugfile: Path, keyfile: Path,
                           signer: MinisignSigner, sample_plugin_bytes: bytes) -> None:
        assert run_command(monkeypatch, ['sign', str(plugfile), '-k', str(keyfile), '-f']) is None

        signed = plugfile.read_bytes()
        sigs = parse_signatures(signed)
        assert len(sigs) == 1
        assert sigs[0].pubkey == signer.get_public_key()
        assert strip_signatures(signed) == sample_plugin_bytes
        assert verify_signature(sigs[0].protocol, sigs[0].pubkey, sample_plugin_bytes, sigs[0].signature)

    def test_sign_to_output(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path, plugfile: Path,
                            keyfile: Path, sample_plugin_bytes: bytes) -> None:
        output = tmp_path / 'signed.plug.js'
        monkeypatch.setattr(builtins, 'input', lambda *args: pytest.fail('should not prompt'))
        assert run_command(monkeypatch, ['sign', str(plugfile), '-k', str(keyfile), '-o', str(output)]) is None

        assert plugfile.read_bytes() == sample_plugin_bytes
        assert len(parse_signatures(output.read_bytes())) == 1

    def test_overwrite_cancelled(self, monkeypatch: pytest.MonkeyPatch, plugfile: Path, keyfile: Path,
                                 sample_plugin_bytes: bytes) -> None:
        def cancel(*args: str) -> str:
            raise KeyboardInterrupt

        monkeypatch.setattr(builtins, 'input', cancel)
        assert run_command(monkeypatch, ['sign', str(plugfile), '-k', str(keyfile)]) == 1
        assert plugfile.read_bytes() == sample_plugin_bytes

    def test_overwrite_confirmed(self, monkeypatch: pytest.MonkeyPatch, plugfile: Path, keyfile: Path) -> None:
        monkeypatch.setattr(builtins, 'input', lambda *args: '')
        assert run_command(monkeypatch, ['sign', str(plugfile), '-k', str(keyfile)]) is None
        assert len(parse_signatures(plugfile.read_bytes())) == 1

    def test_encrypted_key_password(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path, plugfile: Path,
                                    signer: MinisignSigner) -> None:
        keyfile = tmp_path / 'enc.key'
        keyfile.write_bytes(signer.as_bytes('s3cret', opslimit=scrypt.OPSLIMIT_INTERACTIVE,
                                            memlimit=scrypt.MEMLIMIT_INTERACTIVE))

        assert run_command(monkeypatch, ['sign', str(plugfile), '-k', str(keyfile), '-p', 'wrong', '-f']) == 1
        assert parse_signatures(plugfile.read_bytes()) == []

        monkeypatch.setattr(getpass, 'getpass', lambda *args: 's3cret')
        assert run_command(monkeypatch, ['sign', str(plugfile), '-k', str(keyfile), '-f']) is None
        assert parse_signatures(plugfile.read_bytes())[0].pubkey == signer.get_public_key()

    def test_missing_plugin(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path, keyfile: Path) -> None:
        assert run_command(monkeypatch, ['sign', str(tmp_path / 'nope.plug.js'), '-k', str(keyfile), '-f']) == 1

    def test_empty_plugin(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path, keyfile: Path) -> None:
        empty = tmp_path / 'empty.plug.js'
        empty.write_bytes(b'')
        assert run_command(monkeypatch, ['sign', str(empty), '-k', str(keyfile), '-f']) == 1

    def test_missing_key(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path, plugfile: Path) -> None:
        assert run_command(monkeypatch, ['sign', str(plugfile), '-k', str(tmp_path / 'nope.key'), '-f']) == 1


class TestVerifyCommand:

    def _write_config(self, tmp_path: Path, signer: MinisignSigner) -> Path:
        cfgfile = tmp_path / 'protection.toml'
        cfgfile.write_text('[trusted_public_keys.minisign]\n"%s" = { owner = "Alice" }\n'
                           % signer.get_public_key().decode())
        return cfgfile

    def test_trusted(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path, plugfile: Path,
                     signer: MinisignSigner) -> None:
        cfgfile = self._write_config(tmp_path, signer)
        plugfile.write_bytes(signer.sign_plugin(plugfile.read_bytes()))
        assert run_command(monkeypatch, ['verify', '-c', str(cfgfile), str(plugfile)]) == RES_ALLOWED

    def test_unsigned(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path, plugfile: Path,
                      signer: MinisignSigner) -> None:
        cfgfile = self._write_config(tmp_path, signer)
        assert run_command(monkeypatch, ['verify', '-c', str(cfgfile), str(plugfile)]) == RES_REJECTED
        assert run_command(monkeypatch, ['verify', '-c', str(cfgfile), '--allow-unsigned',
                                         str(plugfile)]) == RES_ALLOWED

    def test_env_config(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path, plugfile: Path,
                        signers: List[MinisignSigner]) -> None:
        cfgfile = self._write_config(tmp_path, signers[0])
        monkeypatch.setenv(PROTECTION_CONFIG_ENV, str(cfgfile))
        plugfile.write_bytes(signers[1].sign_plugin(plugfile.read_bytes()))
        assert run_command(monkeypatch, ['verify', str(plugfile)]) == RES_REJECTED

    def test_highest_result_wins(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path, plugfile: Path,
                                 signer: MinisignSigner) -> None:
        cfgfile = self._write_config(tmp_path, signer)
        good = tmp_path / 'good.plug.js'
        good.write_bytes(signer.sign_plugin(plugfile.read_bytes()))
        bad = tmp_path / 'bad.plug.js'
        bad.write_bytes(b'// signature|minisign: abc\n' + plugfile.read_bytes())
        assert run_command(monkeypatch, ['verify', '-c', str(cfgfile), str(good), str(plugfile),
                                         str(bad)]) == RES_MALFORMED

    def test_no_config(self, monkeypatch: pytest.MonkeyPatch, plugfile: Path) -> None:
        assert run_command(monkeypatch, ['verify', str(plugfile)]) == RES_CONFIGERR

    def test_invalid_config(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path, plugfile: Path) -> None:
        cfgfile = tmp_path / 'protection.toml'
        cfgfile.write_text('[trusted_public_keys.pgp]\n"abc" = { owner = "Alice" }\n')
        assert run_command(monkeypatch, ['verify', '-c', str(cfgfile), str(plugfile)]) == RES_CONFIGERR


class TestGenkeyCommand:

    def test_unencrypted(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        prefix = tmp_path / 'mykey'
        assert run_command(monkeypatch, ['genkey', '-W', '-o', str(prefix)]) is None

        skey = tmp_path / 'mykey.key'
        pkey = tmp_path / 'mykey.pub'
        assert stat.S_IMODE(os.stat(skey).st_mode) == 0o600
        loaded = load_signer('minisign', skey.read_bytes())
        assert Minisign.decode_public_key(pkey.read_bytes())[0] == loaded.keyid  # type: ignore[attr-defined]

        # refuses to overwrite
        assert run_command(monkeypatch, ['genkey', '-W', '-o', str(prefix)]) == 1
        assert run_command(monkeypatch, ['genkey', '-W', '-f', '-o', str(prefix)]) is None

    def test_password_mismatch(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        answers = iter(['one', 'two'])
        monkeypatch.setattr(getpass, 'getpass', lambda *args: next(answers))
        assert run_command(monkeypatch, ['genkey', '-o', str(tmp_path / 'mykey')]) == 1
        assert not (tmp_path / 'mykey.key').exists()
