# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.

from enum import Enum
from typing import Any, Callable, List, Mapping, Optional, Sequence, Union

import cbor2

from cosesign.algorithms import Algorithm
from cosesign.errors import AlgorithmMismatch, CoseError, DecodeError, NoSignerFound
from cosesign.headers import HeaderMap, check_buckets, key_id

# See https://www.iana.org/assignments/cbor-tags/cbor-tags.xhtml
CBOR_TAG_SIGN = 98
CBOR_TAG_SIGN1 = 18
CBOR_TAG_MAC0 = 17


class MessageState(Enum):
    UNSIGNED = "Unsigned"
    SIGNING = "Signing"
    SIGNED = "Signed"
    VERIFYING = "Verifying"
    VERIFIED = "Verified"
    VERIFICATION_FAILED = "VerificationFailed"


class Layer:
    """
    The protected and unprotected header buckets shared by every COSE
    structure, messages and signatures alike.
    """

    def __init__(
        self,
        protected: Optional[Mapping] = None,
        unprotected: Optional[Mapping] = None,
    ):
        self.protected = (
            protected
            if isinstance(protected, HeaderMap) and protected.protected
            else HeaderMap(protected, protected=True)
        )
        self.unprotected = (
            unprotected
            if isinstance(unprotected, HeaderMap) and not unprotected.protected
            else HeaderMap(unprotected)
        )

    @property
    def kid(self) -> Optional[bytes]:
        return key_id(self.protected, self.unprotected)

    def check_headers(self):
        self.protected.validate()
        check_buckets(self.protected, self.unprotected)

    def protected_with_algorithm(self, alg: Algorithm) -> HeaderMap:
        """
        Return the protected bucket to sign with alg: this one if alg is
        already set (or cannot be set any more), otherwise a copy carrying
        alg. The bucket itself is left untouched until signing succeeds.
        Raises AlgorithmMismatch if alg disagrees with the header, and
        HeaderError if the added alg collides with the unprotected bucket.
        """
        check_algorithm(self.protected, alg)
        if self.protected.algorithm is not None or self.protected.finalized:
            return self.protected
        protected = HeaderMap(self.protected, protected=True)
        protected.algorithm = alg
        check_buckets(protected, self.unprotected)
        return protected

    def encode_headers(self) -> List[Any]:
        self.check_headers()
        return [self.protected.encode(), self.unprotected.as_map()]


def check_algorithm(protected: HeaderMap, alg: Algorithm):
    header_alg = protected.algorithm
    if header_alg is not None and header_alg != alg:
        raise AlgorithmMismatch(f"key {alg}: header {header_alg}")


def check_payload(payload: Any) -> Optional[bytes]:
    if payload is None:
        return None
    if not isinstance(payload, (bytes, bytearray)):
        raise TypeError(f"payload must be bytes or None, got {type(payload).__name__}")
    return bytes(payload)


def decode_tagged(data: bytes, tag: int, length: int, name: str) -> list:
    """
    Decode a tagged COSE structure and return the array it wraps.
    """
    try:
        decoded = cbor2.loads(data)
    except (cbor2.CBORDecodeError, TypeError) as e:
        raise DecodeError(f"cbor: invalid {name} object: {e}") from e
    if not isinstance(decoded, cbor2.CBORTag) or decoded.tag != tag:
        raise DecodeError(f"cbor: invalid {name}_Tagged object")
    value = decoded.value
    if not isinstance(value, list) or len(value) != length:
        raise DecodeError(f"cbor: {name} must be an array of length {length}")
    return value


def decode_layer(protected: Any, unprotected: Any) -> Layer:
    layer = Layer(
        HeaderMap.decode_protected(protected),
        HeaderMap.decode_unprotected(unprotected),
    )
    try:
        layer.check_headers()
    except CoseError as e:
        raise DecodeError(str(e)) from e
    return layer


def decode_payload(payload: Any) -> Optional[bytes]:
    if payload is not None and not isinstance(payload, bytes):
        raise DecodeError("cbor: payload must be bstr or nil")
    return payload


# A resolver maps a signature entry, by index, to the key that signs or
# verifies it. It raises NoSignerFound when it has none.
Resolver = Callable[[int, Any], Any]
Resolvable = Union[Resolver, Mapping[bytes, Any], Sequence[Any]]


def resolve_by_kid(keys: Mapping[bytes, Any]) -> Resolver:
    def resolve(index, entry):
        kid = entry.kid
        if kid is None or kid not in keys:
            raise NoSignerFound(f"no key found for signature {index} with kid {kid!r}")
        return keys[kid]

    return resolve


def resolve_by_position(keys: Sequence[Any], count: int) -> Resolver:
    if len(keys) != count:
        raise NoSignerFound(f"{len(keys)} keys for {count} signatures")

    def resolve(index, entry):
        return keys[index]

    return resolve


def as_resolver(keys: Resolvable, count: int) -> Resolver:
    """
    Accept a resolver function, a mapping from kid to key, or a sequence of
    keys in signature order.
    """
    if isinstance(keys, Mapping):
        return resolve_by_kid(keys)
    if isinstance(keys, (list, tuple)):
        return resolve_by_position(keys, count)
    if callable(keys):
        resolver = keys

        def resolve(index, entry):
            key = resolver(index, entry)
            if key is None:
                raise NoSignerFound(f"no key found for signature {index}")
            return key

        return resolve
    raise TypeError(
        f"Expected a resolver, a mapping or a sequence of keys, got {type(keys).__name__}"
    )
