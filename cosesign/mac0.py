# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.

from typing import Mapping, Optional

import cbor2
from loguru import logger as LOG  # type: ignore

from cosesign.errors import (
    AlgorithmMismatch,
    AuthenticationError,
    CoseError,
    DecodeError,
)
from cosesign.message import (
    CBOR_TAG_MAC0,
    Layer,
    MessageState,
    check_algorithm,
    check_payload,
    decode_layer,
    decode_payload,
    decode_tagged,
)
from cosesign.signer import HMACAuthenticator
from cosesign.structures import CONTEXT_MAC0, mac_structure


def _check_mac_family(authenticator: HMACAuthenticator):
    if not authenticator.algorithm.family.is_mac():
        raise AlgorithmMismatch(
            f"{authenticator.algorithm} is not a MAC algorithm and cannot be used in a COSE_Mac0 message"
        )


class Mac0Message(Layer):
    """
    A COSE_Mac0 message: a payload authenticated with a tag under a key
    both parties already share.

    COSE_Mac0 = [
        Headers,
        payload : bstr / nil,
        tag : bstr
    ]
    """

    def __init__(
        self,
        payload: Optional[bytes] = None,
        protected: Optional[Mapping] = None,
        unprotected: Optional[Mapping] = None,
        tag: bytes = b"",
    ):
        super().__init__(protected, unprotected)
        self.payload = check_payload(payload)
        self.tag = tag
        self.state = MessageState.SIGNED if tag else MessageState.UNSIGNED

    def __repr__(self):
        return (
            f"<COSE_Mac0: [{self.protected!r}, {self.unprotected!r}, "
            f"({len(self.payload or b'')} B), ({len(self.tag or b'')} B)]>"
        )

    def create_tag(self, authenticator: HMACAuthenticator, external_aad: bytes = b""):
        if self.state != MessageState.UNSIGNED or self.tag:
            raise CoseError("Mac0Message already has a tag")
        _check_mac_family(authenticator)
        self.check_headers()
        protected = self.protected_with_algorithm(authenticator.algorithm)
        protected.validate()
        LOG.debug(
            f"Tagging COSE_Mac0 with {authenticator.algorithm} (kid={self.kid!r})"
        )

        self.state = MessageState.SIGNING
        try:
            tag = authenticator.create_tag(
                mac_structure(
                    CONTEXT_MAC0, protected.encode(), external_aad, self.payload
                )
            )
        except Exception:
            self.state = MessageState.UNSIGNED
            raise
        self.protected = protected
        self.protected.finalize()
        self.tag = tag
        self.state = MessageState.SIGNED

    def authenticate_tag(
        self, authenticator: HMACAuthenticator, external_aad: bytes = b""
    ):
        """
        Authenticate the tag, returning None on success and raising
        AuthenticationError otherwise.
        """
        _check_mac_family(authenticator)
        check_algorithm(self.protected, authenticator.algorithm)
        previous = self.state
        self.state = MessageState.VERIFYING
        try:
            authenticator.authenticate_tag(
                mac_structure(
                    CONTEXT_MAC0, self.protected.encode(), external_aad, self.payload
                ),
                self.tag,
            )
        except AuthenticationError:
            self.state = MessageState.VERIFICATION_FAILED
            raise
        except Exception:
            self.state = previous
            raise
        self.state = MessageState.VERIFIED

    def encode(self) -> bytes:
        if not self.tag:
            raise CoseError("Mac0Message has no tag")
        return cbor2.dumps(
            cbor2.CBORTag(
                CBOR_TAG_MAC0, self.encode_headers() + [self.payload, self.tag]
            )
        )

    @classmethod
    def decode(cls, data: bytes) -> "Mac0Message":
        protected, unprotected, payload, tag = decode_tagged(
            data, CBOR_TAG_MAC0, 4, "COSE_Mac0"
        )
        if not isinstance(tag, bytes) or not tag:
            raise DecodeError("cbor: COSE_Mac0 tag must be a non-empty bstr")
        layer = decode_layer(protected, unprotected)
        return cls(decode_payload(payload), layer.protected, layer.unprotected, tag)
