# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.

from dataclasses import dataclass
from enum import Enum
from typing import Dict, NoReturn, Optional, Type, Union

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec

from cosesign.errors import UnknownAlgorithm


class AlgorithmFamily(Enum):
    ECDSA = "ECDSA"
    EDDSA = "EdDSA"
    RSA_PSS = "RSASSA-PSS"
    HMAC = "HMAC"

    def is_signature(self):
        return self in (
            AlgorithmFamily.ECDSA,
            AlgorithmFamily.EDDSA,
            AlgorithmFamily.RSA_PSS,
        )

    def is_mac(self):
        return self == AlgorithmFamily.HMAC


@dataclass(frozen=True)
class Algorithm:
    """
    An entry of the IANA "COSE Algorithms" registry.

    For ECDSA, key_size is the size in bytes of a curve coordinate, which is
    also the width of each of r and s in the signature. For HMAC it is the
    length of the tag. RSA and EdDSA signature sizes depend on the key.
    """

    name: str
    value: int
    family: AlgorithmFamily
    hash_algorithm: Optional[Type[hashes.HashAlgorithm]] = None
    curve: Optional[Type[ec.EllipticCurve]] = None
    key_size: Optional[int] = None

    def __str__(self):
        return self.name

    def new_hash(self) -> hashes.HashAlgorithm:
        if self.hash_algorithm is None:
            raise UnknownAlgorithm(f"{self.name} has no associated hash function")
        return self.hash_algorithm()

    @property
    def signature_size(self) -> Optional[int]:
        if self.family == AlgorithmFamily.ECDSA:
            assert self.key_size
            return 2 * self.key_size
        if self.family == AlgorithmFamily.HMAC:
            return self.key_size
        return None


_BY_NAME: Dict[str, Algorithm] = {}
_BY_VALUE: Dict[int, Algorithm] = {}


def _register(alg: Algorithm) -> Algorithm:
    if alg.name in _BY_NAME or alg.value in _BY_VALUE:
        raise ValueError(f"Algorithm {alg.name} ({alg.value}) is already registered")
    _BY_NAME[alg.name] = alg
    _BY_VALUE[alg.value] = alg
    return alg


ES256 = _register(
    Algorithm("ES256", -7, AlgorithmFamily.ECDSA, hashes.SHA256, ec.SECP256R1, 32)
)
ES384 = _register(
    Algorithm("ES384", -35, AlgorithmFamily.ECDSA, hashes.SHA384, ec.SECP384R1, 48)
)
ES512 = _register(
    Algorithm("ES512", -36, AlgorithmFamily.ECDSA, hashes.SHA512, ec.SECP521R1, 66)
)
# RFC 8152 8.2: only PureEdDSA is used, so there is no pre-hash
EDDSA = _register(Algorithm("EdDSA", -8, AlgorithmFamily.EDDSA))
PS256 = _register(Algorithm("PS256", -37, AlgorithmFamily.RSA_PSS, hashes.SHA256))
PS384 = _register(Algorithm("PS384", -38, AlgorithmFamily.RSA_PSS, hashes.SHA384))
PS512 = _register(Algorithm("PS512", -39, AlgorithmFamily.RSA_PSS, hashes.SHA512))
HMAC_256_256 = _register(
    Algorithm("HMAC 256/256", 5, AlgorithmFamily.HMAC, hashes.SHA256, key_size=32)
)
HMAC_384_384 = _register(
    Algorithm("HMAC 384/384", 6, AlgorithmFamily.HMAC, hashes.SHA384, key_size=48)
)
HMAC_512_512 = _register(
    Algorithm("HMAC 512/512", 7, AlgorithmFamily.HMAC, hashes.SHA512, key_size=64)
)

# Registered with IANA, but without an implementation here
KNOWN_UNSUPPORTED = {
    "RS256": -257,
    "RS384": -258,
    "RS512": -259,
    "HMAC 256/64": 4,
    "AES-MAC 128/64": 14,
    "AES-MAC 256/64": 15,
    "AES-MAC 128/128": 25,
    "AES-MAC 256/128": 26,
    "Reserved": 0,
}

AlgorithmLike = Union[Algorithm, int, str]


def lookup(name_or_id: AlgorithmLike) -> Algorithm:
    """
    Return the registered algorithm for an IANA name or numeric identifier.
    :param name_or_id: an Algorithm, its name (e.g. "ES256") or its value (e.g. -7).
    :return: the registry entry.
    """
    if isinstance(name_or_id, Algorithm):
        if _BY_VALUE.get(name_or_id.value) != name_or_id:
            raise UnknownAlgorithm(f"Algorithm {name_or_id.name} is not registered")
        return name_or_id
    # bool is an int subclass: True would silently resolve to 1
    if isinstance(name_or_id, bool):
        raise UnknownAlgorithm(f"Ambiguous algorithm identifier {name_or_id!r}")
    if isinstance(name_or_id, int):
        alg = _BY_VALUE.get(name_or_id)
        if alg is None:
            _raise_unknown(name_or_id, name_or_id in KNOWN_UNSUPPORTED.values())
        return alg
    if isinstance(name_or_id, str):
        alg = _BY_NAME.get(name_or_id)
        if alg is None:
            _raise_unknown(name_or_id, name_or_id in KNOWN_UNSUPPORTED)
        return alg
    raise UnknownAlgorithm(
        f"Algorithm identifier must be int or str, got {type(name_or_id).__name__}"
    )


def _raise_unknown(name_or_id, known: bool) -> NoReturn:
    if known:
        raise UnknownAlgorithm(f"Algorithm {name_or_id!r} is not supported")
    raise UnknownAlgorithm(f"Unknown algorithm {name_or_id!r}")


def registered():
    return list(_BY_VALUE.values())
