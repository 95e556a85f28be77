# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.

from typing import Mapping, Optional

import cbor2
from loguru import logger as LOG  # type: ignore

from cosesign.algorithms import Algorithm
from cosesign.errors import (
    AlgorithmMismatch,
    CoseError,
    DecodeError,
    VerificationError,
)
from cosesign.message import (
    CBOR_TAG_SIGN1,
    Layer,
    MessageState,
    check_algorithm,
    check_payload,
    decode_layer,
    decode_payload,
    decode_tagged,
)
from cosesign.signer import Signer, Verifier
from cosesign.structures import CONTEXT_SIGNATURE1, sig_structure


class Sign1Message(Layer):
    """
    A COSE_Sign1 message: a payload signed by a single signer, whose
    algorithm and key identifier live in the message headers.

    COSE_Sign1 = [
        Headers,
        payload : bstr / nil,
        signature : bstr
    ]
    """

    def __init__(
        self,
        payload: Optional[bytes] = None,
        protected: Optional[Mapping] = None,
        unprotected: Optional[Mapping] = None,
        signature: bytes = b"",
    ):
        super().__init__(protected, unprotected)
        self.payload = check_payload(payload)
        self.signature = signature
        self.state = MessageState.SIGNED if signature else MessageState.UNSIGNED

    def __repr__(self):
        return (
            f"<COSE_Sign1: [{self.protected!r}, {self.unprotected!r}, "
            f"({len(self.payload or b'')} B), ({len(self.signature or b'')} B)]>"
        )

    def to_be_signed(
        self, external_aad: bytes = b"", algorithm: Optional[Algorithm] = None
    ) -> bytes:
        """
        Return the encoded Sig_structure for this message. When algorithm is
        given and no alg header is set yet, the header is set first, as
        signing would do.
        """
        if algorithm is not None and self.state == MessageState.UNSIGNED:
            self.protected = self.protected_with_algorithm(algorithm)
        self.check_headers()
        return sig_structure(
            CONTEXT_SIGNATURE1,
            self.protected.encode(),
            None,
            external_aad,
            self.payload,
        )

    def sign(self, signer: Signer, external_aad: bytes = b""):
        if self.state != MessageState.UNSIGNED or self.signature:
            raise CoseError("Sign1Message already has signature bytes")
        if not signer.algorithm.family.is_signature():
            raise AlgorithmMismatch(
                f"{signer.algorithm} is a MAC algorithm and cannot be used in a COSE_Sign1 message"
            )
        self.check_headers()
        protected = self.protected_with_algorithm(signer.algorithm)
        protected.validate()
        LOG.debug(f"Signing COSE_Sign1 with {signer.algorithm} (kid={self.kid!r})")

        self.state = MessageState.SIGNING
        try:
            tbs = sig_structure(
                CONTEXT_SIGNATURE1, protected.encode(), None, external_aad, self.payload
            )
            signature = signer.sign(tbs)
        except Exception:
            self.state = MessageState.UNSIGNED
            raise
        self.attach_signature(signature, protected)

    def attach_signature(self, signature: bytes, protected=None):
        """
        Store a signature computed elsewhere, for example by an HSM over the
        output of to_be_signed(), and finalize the protected header.
        """
        if not signature:
            raise CoseError("Cannot attach an empty signature")
        if protected is not None:
            self.protected = protected
        self.protected.finalize()
        self.signature = signature
        self.state = MessageState.SIGNED

    def verify(self, verifier: Verifier, external_aad: bytes = b""):
        """
        Verify the signature, returning None on success and raising
        VerificationError otherwise.
        """
        if not verifier.algorithm.family.is_signature():
            raise AlgorithmMismatch(
                f"{verifier.algorithm} is a MAC algorithm and cannot be used in a COSE_Sign1 message"
            )
        check_algorithm(self.protected, verifier.algorithm)
        previous = self.state
        self.state = MessageState.VERIFYING
        try:
            if not self.signature:
                raise VerificationError("Sign1Message has no signature to verify")
            tbs = sig_structure(
                CONTEXT_SIGNATURE1,
                self.protected.encode(),
                None,
                external_aad,
                self.payload,
            )
            verifier.verify(tbs, self.signature)
        except VerificationError:
            self.state = MessageState.VERIFICATION_FAILED
            raise
        except Exception:
            self.state = previous
            raise
        self.state = MessageState.VERIFIED

    def encode(self) -> bytes:
        return cbor2.dumps(
            cbor2.CBORTag(
                CBOR_TAG_SIGN1,
                self.encode_headers() + [self.payload, self.signature or b""],
            )
        )

    @classmethod
    def decode(cls, data: bytes) -> "Sign1Message":
        protected, unprotected, payload, signature = decode_tagged(
            data, CBOR_TAG_SIGN1, 4, "COSE_Sign1"
        )
        if not isinstance(signature, bytes):
            raise DecodeError("cbor: COSE_Sign1 signature must be bstr")
        layer = decode_layer(protected, unprotected)
        return cls(
            decode_payload(payload), layer.protected, layer.unprotected, signature
        )


def sign1(
    signer: Signer,
    payload: Optional[bytes],
    protected: Optional[Mapping] = None,
    unprotected: Optional[Mapping] = None,
    external_aad: bytes = b"",
) -> Sign1Message:
    """
    Create and sign a Sign1Message in one step.
    """
    msg = Sign1Message(payload, protected, unprotected)
    msg.sign(signer, external_aad)
    return msg
