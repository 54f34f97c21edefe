import base64
import collections
import itertools
import pytest
import re
import trustboot.errors
import trustboot.tls.secrets as secrets


def _replay(*chunks: bytes):
    "Random source that returns the given bytes, in order, as requested"
    data = iter(itertools.chain.from_iterable(chunks))

    def read(n: int) -> bytes:
        return bytes(itertools.islice(data, n))

    return read


@pytest.mark.parametrize("length", [0, 1, 6, 16, 100])
def test_random_token_length_and_alphabet(length):
    token = secrets.random_token(length)
    assert len(token) == length
    assert set(token) <= set(secrets.TOKEN_ALPHABET)


def test_alphabet_is_lowercase_alphanumeric():
    assert len(secrets.TOKEN_ALPHABET) == 36
    assert secrets.TOKEN_ALPHABET == "".join(sorted(set(secrets.TOKEN_ALPHABET)))


def test_random_token_rejects_biased_bytes():
    # 252..255 must be discarded, 0 -> "0", 35 -> "z", 36 -> "0", 251 -> "z"
    source = _replay(bytes([252, 0, 253, 35, 254, 255, 36, 251]))
    assert secrets.random_token(4, random_source=source) == "0z0z"


def test_random_token_is_uniform():
    token = secrets.random_token(36 * 1000)
    counts = collections.Counter(token)
    assert set(counts) == set(secrets.TOKEN_ALPHABET)
    expected = len(token) / 36
    chi_square = sum((c - expected) ** 2 / expected for c in counts.values())
    # 35 degrees of freedom; the critical value at p=0.0001 is about 73
    assert chi_square < 80


def test_random_token_calls_are_independent():
    assert secrets.random_token(32) != secrets.random_token(32)


def test_negative_length_is_rejected():
    with pytest.raises(ValueError):
        secrets.random_token(-1)


def test_random_source_failure_is_entropy_error():
    def broken(n):
        raise OSError("no entropy")

    with pytest.raises(trustboot.errors.EntropyError):
        secrets.random_token(6, random_source=broken)
    with pytest.raises(trustboot.errors.RandomSourceError):
        secrets.certificate_key(random_source=broken)
    with pytest.raises(trustboot.errors.EntropyError):
        secrets.encryption_token(random_source=broken)


def test_short_read_is_entropy_error():
    with pytest.raises(trustboot.errors.EntropyError):
        secrets.certificate_key(random_source=lambda n: b"\x00" * (n - 1))


def test_bootstrap_token_format():
    pattern = re.compile(r"^[0-9a-z]{6}\.[0-9a-z]{16}$")
    for _ in range(20):
        assert pattern.match(secrets.bootstrap_token())
        assert pattern.match(secrets.trustd_token())


def test_generate_token_lengths():
    first, second = secrets.generate_token(3, 9).split(".")
    assert (len(first), len(second)) == (3, 9)


def test_certificate_key_is_sha256_hex():
    key = secrets.certificate_key()
    assert re.match(r"^[0-9a-f]{64}$", key)
    assert key != secrets.certificate_key()


def test_certificate_key_is_digest_of_random_bytes():
    import hashlib

    key = secrets.certificate_key(random_source=lambda n: b"\x01" * n)
    assert key == hashlib.sha256(b"\x01" * 32).hexdigest()


def test_encryption_token_decodes_to_32_bytes():
    token = secrets.encryption_token()
    assert len(base64.b64decode(token, validate=True)) == 32


def test_encryption_token_is_not_hashed():
    token = secrets.encryption_token(random_source=lambda n: b"\xff" * n)
    assert base64.b64decode(token) == b"\xff" * 32
