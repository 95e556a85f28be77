# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.

from typing import Optional

import cbor2

# See https://datatracker.ietf.org/doc/html/rfc8152#section-4.4
CONTEXT_SIGNATURE = "Signature"
CONTEXT_SIGNATURE1 = "Signature1"

# See https://datatracker.ietf.org/doc/html/rfc8152#section-6.3
CONTEXT_MAC0 = "MAC0"

SIGNATURE_CONTEXTS = (CONTEXT_SIGNATURE, CONTEXT_SIGNATURE1)
MAC_CONTEXTS = (CONTEXT_MAC0,)


def _bstr(value: Optional[bytes], field: str) -> bytes:
    if value is None:
        return b""
    if not isinstance(value, (bytes, bytearray)):
        raise TypeError(f"{field} must be bytes, got {type(value).__name__}")
    return bytes(value)


def sig_structure(
    context: str,
    body_protected: bytes,
    sign_protected: Optional[bytes] = None,
    external_aad: Optional[bytes] = None,
    payload: Optional[bytes] = None,
) -> bytes:
    """
    Build ToBeSigned, the encoded Sig_structure:

    Sig_structure = [
        context : "Signature" / "Signature1",
        body_protected : empty_or_serialized_map,
        ? sign_protected : empty_or_serialized_map,
        external_aad : bstr,
        payload : bstr
    ]

    sign_protected is present for "Signature" only. A missing external_aad or
    payload is encoded as a zero-length bstr, never left out.
    """
    if context not in SIGNATURE_CONTEXTS:
        raise ValueError(f"Invalid Sig_structure context {context!r}")
    structure = [context, _bstr(body_protected, "body_protected")]
    if context == CONTEXT_SIGNATURE:
        if sign_protected is None:
            raise ValueError("sign_protected is required for the Signature context")
        structure.append(_bstr(sign_protected, "sign_protected"))
    elif sign_protected is not None:
        raise ValueError(f"sign_protected is not used for the {context} context")
    structure.append(_bstr(external_aad, "external_aad"))
    structure.append(_bstr(payload, "payload"))
    return cbor2.dumps(structure)


def mac_structure(
    context: str,
    protected: bytes,
    external_aad: Optional[bytes] = None,
    payload: Optional[bytes] = None,
) -> bytes:
    """
    Build ToBeMaced, the encoded MAC_structure:

    MAC_structure = [
        context : "MAC0",
        protected : empty_or_serialized_map,
        external_aad : bstr,
        payload : bstr
    ]
    """
    if context not in MAC_CONTEXTS:
        raise ValueError(f"Invalid MAC_structure context {context!r}")
    return cbor2.dumps(
        [
            context,
            _bstr(protected, "protected"),
            _bstr(external_aad, "external_aad"),
            _bstr(payload, "payload"),
        ]
    )
