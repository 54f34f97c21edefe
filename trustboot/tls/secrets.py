#!/usr/bin/env python3
#
# Generates the shared secrets handed out during bootstrap: bootstrap tokens,
# the kubeadm certificate key and the secret encryption key.

import base64
import hashlib
import os
import trustboot.configuration.defaults
import trustboot.errors
import typing

RandomSource = typing.Callable[[int], bytes]

# Characters a bootstrap token can consist of
TOKEN_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"

# len(TOKEN_ALPHABET) = 36 doesn't evenly divide the 256 possible values of a
# byte (256 mod 36 = 4). Bytes >= 252 are discarded so that every character
# is equally likely.
MAX_BYTE_VALUE = 252


def _read(random_source: RandomSource, length: int) -> bytes:
    try:
        data = random_source(length)
    except OSError as e:
        raise trustboot.errors.EntropyError(
            f"failed to read from random source: {e}"
        ) from e
    if len(data) != length:
        raise trustboot.errors.EntropyError(
            f"random source returned {len(data)} bytes, expected {length}"
        )
    return data


def random_token(length: int, *, random_source: RandomSource = os.urandom) -> str:
    "Returns a uniformly random string of TOKEN_ALPHABET characters"
    if length < 0:
        raise ValueError("length must not be negative")

    token: typing.List[str] = []
    while len(token) < length:
        # Read ahead, since some bytes will be rejected
        for b in _read(random_source, (length - len(token)) * 2):
            if b >= MAX_BYTE_VALUE:
                continue
            token.append(TOKEN_ALPHABET[b % len(TOKEN_ALPHABET)])
            if len(token) == length:
                break
    return "".join(token)


def generate_token(
    first_length: int, second_length: int, *, random_source: RandomSource = os.urandom
) -> str:
    """
    Generate a token of the format abc.123 (like kubeadm and the trust
    service use), where the lengths of the parts before and after the dot are
    given as arguments.
    """
    return ".".join(
        (
            random_token(first_length, random_source=random_source),
            random_token(second_length, random_source=random_source),
        )
    )


def bootstrap_token(*, random_source: RandomSource = os.urandom) -> str:
    return generate_token(
        trustboot.configuration.defaults.TOKEN_ID_LENGTH,
        trustboot.configuration.defaults.TOKEN_SECRET_LENGTH,
        random_source=random_source,
    )


# The trust service token has the same shape as a bootstrap token
trustd_token = bootstrap_token


def certificate_key(*, random_source: RandomSource = os.urandom) -> str:
    "Returns the hex encoded SHA-256 digest of 32 random bytes"
    return hashlib.sha256(_read(random_source, 32)).hexdigest()


def encryption_token(*, random_source: RandomSource = os.urandom) -> str:
    "Returns 32 random bytes, base64 encoded, for the aescbc secret provider"
    return base64.standard_b64encode(_read(random_source, 32)).decode("ascii")
