# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.

from typing import Any, List, Mapping, Optional, Tuple

import cbor2
from loguru import logger as LOG  # type: ignore

from cosesign.errors import (
    AlgorithmMismatch,
    CoseError,
    DecodeError,
    NoSignatures,
    SignatureResult,
    VerificationError,
    VerificationFailed,
)
from cosesign.headers import HeaderMap
from cosesign.message import (
    CBOR_TAG_SIGN,
    Layer,
    MessageState,
    Resolvable,
    as_resolver,
    check_algorithm,
    check_payload,
    decode_layer,
    decode_payload,
    decode_tagged,
)
from cosesign.signer import Signer, Verifier
from cosesign.structures import CONTEXT_SIGNATURE, sig_structure


def _check_signature_family(key):
    if not key.algorithm.family.is_signature():
        raise AlgorithmMismatch(
            f"{key.algorithm} is a MAC algorithm and cannot be used in a COSE_Sign message"
        )


class Signature(Layer):
    """
    A COSE_Signature: one signer's headers and signature over the content of
    its parent SignMessage.

    COSE_Signature = [
        Headers,
        signature : bstr
    ]
    """

    def __init__(
        self,
        protected: Optional[Mapping] = None,
        unprotected: Optional[Mapping] = None,
        signature: bytes = b"",
    ):
        super().__init__(protected, unprotected)
        self.signature = signature

    def __repr__(self):
        return (
            f"<COSE_Signature: [{self.protected!r}, {self.unprotected!r}, "
            f"({len(self.signature or b'')} B)]>"
        )

    def to_be_signed(
        self,
        body_protected: bytes,
        payload: Optional[bytes],
        external_aad: bytes = b"",
        protected: Optional[HeaderMap] = None,
    ) -> bytes:
        protected = protected if protected is not None else self.protected
        return sig_structure(
            CONTEXT_SIGNATURE,
            body_protected,
            protected.encode(),
            external_aad,
            payload,
        )

    def compute(
        self,
        signer: Signer,
        body_protected: bytes,
        payload: Optional[bytes],
        external_aad: bytes = b"",
    ) -> Tuple[HeaderMap, bytes]:
        """
        Sign without modifying this entry. Returns the protected bucket that
        was signed and the signature bytes.
        """
        _check_signature_family(signer)
        protected = self.protected_with_algorithm(signer.algorithm)
        protected.validate()
        tbs = self.to_be_signed(body_protected, payload, external_aad, protected)
        return protected, signer.sign(tbs)

    def commit(self, protected: HeaderMap, signature: bytes):
        self.protected = protected
        self.protected.finalize()
        self.signature = signature

    def sign(
        self,
        signer: Signer,
        body_protected: bytes,
        payload: Optional[bytes],
        external_aad: bytes = b"",
    ):
        """
        Sign this entry on its own, for callers managing signatures one by
        one. The parent's encoded protected header and payload are required.
        """
        if self.signature:
            raise CoseError("Signature already has signature bytes")
        self.commit(*self.compute(signer, body_protected, payload, external_aad))

    def verify(
        self,
        verifier: Verifier,
        body_protected: bytes,
        payload: Optional[bytes],
        external_aad: bytes = b"",
    ):
        _check_signature_family(verifier)
        check_algorithm(self.protected, verifier.algorithm)
        if not self.signature:
            raise VerificationError("Signature has no signature bytes to verify")
        tbs = self.to_be_signed(body_protected, payload, external_aad)
        verifier.verify(tbs, self.signature)

    def encode_value(self) -> List[Any]:
        return self.encode_headers() + [self.signature or b""]

    @classmethod
    def decode_value(cls, value: Any) -> "Signature":
        if not isinstance(value, list) or len(value) != 3:
            raise DecodeError("cbor: COSE_Signature must be an array of length 3")
        protected, unprotected, signature = value
        if not isinstance(signature, bytes):
            raise DecodeError("cbor: COSE_Signature signature must be bstr")
        layer = decode_layer(protected, unprotected)
        return cls(layer.protected, layer.unprotected, signature)


class SignMessage(Layer):
    """
    A COSE_Sign message: a payload signed by one or more signers.

    COSE_Sign = [
        Headers,
        payload : bstr / nil,
        signatures : [+ COSE_Signature]
    ]

    The order of signatures is significant: results are reported by index.
    """

    def __init__(
        self,
        payload: Optional[bytes] = None,
        protected: Optional[Mapping] = None,
        unprotected: Optional[Mapping] = None,
        signatures: Optional[List[Signature]] = None,
    ):
        super().__init__(protected, unprotected)
        self.payload = check_payload(payload)
        self.signatures: List[Signature] = list(signatures or [])
        self.state = (
            MessageState.SIGNED
            if self.signatures and all(s.signature for s in self.signatures)
            else MessageState.UNSIGNED
        )

    def __repr__(self):
        return (
            f"<COSE_Sign: [{self.protected!r}, {self.unprotected!r}, "
            f"({len(self.payload or b'')} B), {len(self.signatures)} signatures]>"
        )

    def add_signature(self, signature: Signature) -> Signature:
        if self.state != MessageState.UNSIGNED:
            raise CoseError(
                f"Cannot add a signature to a message in state {self.state.value}"
            )
        self.signatures.append(signature)
        return signature

    def sign(self, signers: Resolvable, external_aad: bytes = b""):
        """
        Sign every signature entry, in order.

        :param signers: a resolver function (index, signature) -> Signer, a
            mapping from kid to Signer, or a list of Signers in signature order.
        :param external_aad: externally supplied data bound into every signature.

        Either every entry is signed or, on the first error, none is: the
        error propagates and the message is left unsigned.
        """
        if not self.signatures:
            raise NoSignatures("no signatures attached")
        if self.state != MessageState.UNSIGNED:
            raise CoseError(f"Cannot sign a message in state {self.state.value}")
        self.check_headers()

        self.state = MessageState.SIGNING
        try:
            resolve = as_resolver(signers, len(self.signatures))
            body_protected = self.protected.encode()
            results = []
            for index, signature in enumerate(self.signatures):
                signer = resolve(index, signature)
                LOG.debug(
                    f"Signing signature {index} with {signer.algorithm} "
                    f"(kid={signature.kid!r})"
                )
                signature.check_headers()
                results.append(
                    signature.compute(
                        signer, body_protected, self.payload, external_aad
                    )
                )
        except Exception:
            self.state = MessageState.UNSIGNED
            raise

        self.protected.finalize()
        for signature, (protected, sig) in zip(self.signatures, results):
            signature.commit(protected, sig)
        self.state = MessageState.SIGNED

    def verify(
        self, verifiers: Resolvable, external_aad: bytes = b""
    ) -> List[SignatureResult]:
        """
        Verify every signature entry, in order.

        :param verifiers: a resolver function (index, signature) -> Verifier,
            a mapping from kid to Verifier, or a list of Verifiers in
            signature order.
        :return: one SignatureResult per entry, when all of them verify.

        Resolution errors abort straight away. Otherwise all entries are
        checked, and VerificationFailed is raised with every entry's result
        if any of them failed.
        """
        if not self.signatures:
            raise NoSignatures("no signatures attached")

        previous = self.state
        self.state = MessageState.VERIFYING
        try:
            resolve = as_resolver(verifiers, len(self.signatures))
            body_protected = self.protected.encode()
            results = []
            for index, signature in enumerate(self.signatures):
                verifier = resolve(index, signature)
                LOG.debug(
                    f"Verifying signature {index} with {verifier.algorithm} "
                    f"(kid={signature.kid!r})"
                )
                try:
                    signature.verify(
                        verifier, body_protected, self.payload, external_aad
                    )
                except VerificationError as e:
                    LOG.warning(f"Signature {index} failed verification: {e}")
                    results.append(SignatureResult(index, e))
                else:
                    results.append(SignatureResult(index))
        except Exception:
            self.state = previous
            raise

        if any(not r.ok for r in results):
            self.state = MessageState.VERIFICATION_FAILED
            raise VerificationFailed(results)
        self.state = MessageState.VERIFIED
        return results

    def encode(self) -> bytes:
        if not self.signatures:
            raise NoSignatures("no signatures attached")
        return cbor2.dumps(
            cbor2.CBORTag(
                CBOR_TAG_SIGN,
                self.encode_headers()
                + [self.payload, [s.encode_value() for s in self.signatures]],
            )
        )

    @classmethod
    def decode(cls, data: bytes) -> "SignMessage":
        protected, unprotected, payload, signatures = decode_tagged(
            data, CBOR_TAG_SIGN, 4, "COSE_Sign"
        )
        layer = decode_layer(protected, unprotected)
        if not isinstance(signatures, list) or not signatures:
            raise DecodeError("cbor: COSE_Sign requires at least one COSE_Signature")
        return cls(
            decode_payload(payload),
            layer.protected,
            layer.unprotected,
            [Signature.decode_value(s) for s in signatures],
        )
