# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.

from collections.abc import MutableMapping
from typing import Any, Dict, Iterator, Mapping, Optional, Union

import cbor2

from cosesign.algorithms import Algorithm, lookup
from cosesign.errors import DecodeError, HeaderError, UnknownAlgorithm

# See https://www.iana.org/assignments/cose/cose.xhtml#header-parameters

HEADER_LABEL_ALGORITHM = 1
HEADER_LABEL_CRITICAL = 2
HEADER_LABEL_CONTENT_TYPE = 3
HEADER_LABEL_KEY_ID = 4
HEADER_LABEL_IV = 5
HEADER_LABEL_PARTIAL_IV = 6
HEADER_LABEL_COUNTER_SIGNATURE = 7

COMMON_HEADER_LABELS = {
    "alg": HEADER_LABEL_ALGORITHM,
    "crit": HEADER_LABEL_CRITICAL,
    "content type": HEADER_LABEL_CONTENT_TYPE,
    "kid": HEADER_LABEL_KEY_ID,
    "IV": HEADER_LABEL_IV,
    "Partial IV": HEADER_LABEL_PARTIAL_IV,
    "counter signature": HEADER_LABEL_COUNTER_SIGNATURE,
}

Label = Union[int, str]

_COMMON_HEADER_NAMES: Dict[Label, str] = {
    v: k for k, v in COMMON_HEADER_LABELS.items()
}


def normalize_label(label: Any) -> Label:
    """
    Map a header label to its canonical form: the integer label for the
    common header parameters ("kid" -> 4), the label itself otherwise.
    """
    if isinstance(label, bool) or not isinstance(label, (int, str)):
        raise HeaderError(
            f"header label: require int / tstr type, got {type(label).__name__}"
        )
    if isinstance(label, str):
        return COMMON_HEADER_LABELS.get(label, label)
    return label


def label_name(label: Label) -> str:
    return _COMMON_HEADER_NAMES.get(label, str(label))


def _normalize_algorithm(value: Any) -> Union[int, str]:
    if isinstance(value, Algorithm):
        return value.value
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise HeaderError("header parameter: alg: require int / tstr type")
    if isinstance(value, str):
        try:
            return lookup(value).value
        except UnknownAlgorithm:
            # Private-use text identifiers are legal, just not ours
            return value
    return value


def _is_media_type(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return value >= 0
    if not isinstance(value, str) or not value:
        return False
    return value == value.strip() and value.count("/") == 1


class HeaderMap(MutableMapping):
    """
    One bucket of COSE header parameters, protected or unprotected.

    Labels are normalized on the way in, so "alg" and 1 address the same
    entry. A protected map becomes read-only once finalized: from then on it
    always encodes to the exact bytes that were signed or received.
    """

    def __init__(self, headers: Optional[Mapping] = None, protected: bool = False):
        self.protected = protected
        self._headers: Dict[Label, Any] = {}
        self._encoded: Optional[bytes] = None
        self._finalized = False
        if headers:
            self.update(headers)

    @classmethod
    def decode_protected(cls, encoded: Any) -> "HeaderMap":
        if not isinstance(encoded, bytes):
            raise DecodeError("protected header: require bstr type")
        headers = cls(protected=True)
        if encoded:
            try:
                decoded = cbor2.loads(encoded)
            except cbor2.CBORDecodeError as e:
                raise DecodeError(f"protected header: {e}") from e
            if not isinstance(decoded, dict):
                raise DecodeError("protected header: require map type")
            headers._load(decoded)
        headers._encoded = encoded
        headers._finalized = True
        return headers

    @classmethod
    def decode_unprotected(cls, decoded: Any) -> "HeaderMap":
        if not isinstance(decoded, dict):
            raise DecodeError("unprotected header: require map type")
        headers = cls()
        headers._load(decoded)
        return headers

    def _load(self, decoded: dict):
        for label, value in decoded.items():
            try:
                normalized = normalize_label(label)
            except HeaderError as e:
                raise DecodeError(str(e)) from e
            if normalized in self._headers:
                raise DecodeError(f"header label: duplicated label: {label}")
            self._headers[normalized] = value

    def __getitem__(self, label):
        return self._headers[normalize_label(label)]

    def __contains__(self, label):
        try:
            return normalize_label(label) in self._headers
        except HeaderError:
            return False

    def __setitem__(self, label, value):
        self._check_mutable()
        label = normalize_label(label)
        if label == HEADER_LABEL_ALGORITHM:
            value = _normalize_algorithm(value)
        self._headers[label] = value

    def __delitem__(self, label):
        self._check_mutable()
        del self._headers[normalize_label(label)]

    def __iter__(self) -> Iterator[Label]:
        return iter(self._headers)

    def __len__(self):
        return len(self._headers)

    def __repr__(self):
        kind = "protected" if self.protected else "unprotected"
        items = ", ".join(f"{label_name(k)}: {v!r}" for k, v in self._headers.items())
        return f"<HeaderMap({kind}) {{{items}}}>"

    def _check_mutable(self):
        if self._finalized:
            raise HeaderError("protected header is finalized and cannot be modified")

    @property
    def finalized(self) -> bool:
        return self._finalized

    @property
    def algorithm(self) -> Optional[Algorithm]:
        """
        The algorithm named by the alg parameter, None when absent.
        Raises UnknownAlgorithm for values outside the registry.
        """
        if HEADER_LABEL_ALGORITHM not in self._headers:
            return None
        return lookup(self._headers[HEADER_LABEL_ALGORITHM])

    @algorithm.setter
    def algorithm(self, alg: Algorithm):
        self[HEADER_LABEL_ALGORITHM] = alg

    @property
    def kid(self) -> Optional[bytes]:
        return self._headers.get(HEADER_LABEL_KEY_ID)

    @kid.setter
    def kid(self, kid: bytes):
        self[HEADER_LABEL_KEY_ID] = kid

    def validate(self):
        """
        Check the common header parameters against RFC 8152 3.1.
        """
        for label, value in self._headers.items():
            if label == HEADER_LABEL_ALGORITHM:
                if isinstance(value, bool) or not isinstance(value, (int, str)):
                    raise HeaderError("header parameter: alg: require int / tstr type")
            elif label == HEADER_LABEL_CRITICAL:
                if not self.protected:
                    raise HeaderError("header parameter: crit: not allowed")
                self._validate_critical(value)
            elif label == HEADER_LABEL_CONTENT_TYPE:
                if not _is_media_type(value):
                    raise HeaderError(
                        "header parameter: content type: require uint or tstr of form type/subtype"
                    )
            elif label == HEADER_LABEL_KEY_ID:
                if not isinstance(value, bytes):
                    raise HeaderError("header parameter: kid: require bstr type")
            elif label in (HEADER_LABEL_IV, HEADER_LABEL_PARTIAL_IV):
                if not isinstance(value, bytes):
                    raise HeaderError(
                        f"header parameter: {label_name(label)}: require bstr type"
                    )
        if (
            HEADER_LABEL_IV in self._headers
            and HEADER_LABEL_PARTIAL_IV in self._headers
        ):
            raise HeaderError(
                "header parameter: IV and Partial IV: parameters must not both be present"
            )

    def _validate_critical(self, value):
        if not isinstance(value, list):
            raise HeaderError("header parameter: crit: require array type")
        if not value:
            raise HeaderError("header parameter: crit: require at least one label")
        for label in value:
            if normalize_label(label) not in self._headers:
                raise HeaderError(
                    f"header parameter: crit: missing critical header {label}"
                )

    def encode(self) -> bytes:
        """
        Serialize a protected map to the contents of its bstr wrapper.
        An empty map is encoded as a zero-length string, not as h'a0'.
        """
        assert self.protected, "Only protected headers are serialized to a bstr"
        if self._encoded is not None:
            return self._encoded
        if not self._headers:
            return b""
        self.validate()
        return cbor2.dumps(self._headers, canonical=True)

    def as_map(self) -> Dict[Label, Any]:
        self.validate()
        return dict(self._headers)

    def finalize(self) -> bytes:
        """
        Fix the serialized form of a protected map and make it read-only.
        """
        encoded = self.encode()
        self._encoded = encoded
        self._finalized = True
        return encoded


def check_buckets(protected: HeaderMap, unprotected: HeaderMap):
    """
    Check constraints spanning both buckets of a layer: no label appears
    twice, and IV and Partial IV are never used together.
    """
    unprotected.validate()
    shared = set(protected) & set(unprotected)
    if shared:
        raise HeaderError(
            "header label: present in both protected and unprotected buckets: "
            + ", ".join(label_name(label) for label in shared)
        )
    labels = set(protected) | set(unprotected)
    if HEADER_LABEL_IV in labels and HEADER_LABEL_PARTIAL_IV in labels:
        raise HeaderError(
            "header parameter: IV and Partial IV: parameters must not both be present"
        )


def key_id(protected: HeaderMap, unprotected: HeaderMap) -> Optional[bytes]:
    """
    The key identifier hint of a layer, looked up in the unprotected bucket
    first.
    """
    kid = unprotected.kid
    if kid is None:
        kid = protected.kid
    return kid
