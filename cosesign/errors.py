# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.

from typing import List, NamedTuple, Optional


class CoseError(Exception):
    """Base class for every error raised by cosesign"""


class UnknownAlgorithm(CoseError, ValueError):
    """The algorithm identifier is not registered, or is registered but not supported"""


class AlgorithmMismatch(CoseError):
    """The alg header disagrees with the algorithm of the key in use"""


class HeaderError(CoseError):
    """A header label or parameter is invalid, or a finalized header was modified"""


class NoSignerFound(CoseError, LookupError):
    """No signer or verifier could be resolved for a signature entry"""


class NoSignatures(CoseError):
    """The message has no signature entries attached"""


class SigningError(CoseError):
    """The signing primitive failed, or the key does not suit the algorithm"""


class InvalidKey(CoseError):
    """The key cannot be used with the requested algorithm"""


class VerificationError(CoseError):
    """A single signature did not verify"""


class AuthenticationError(VerificationError):
    """
    A MAC tag did not authenticate. The message is the same whatever the cause
    of the mismatch, so that callers cannot tell which part was wrong.
    """

    MESSAGE = "authentication error"

    def __init__(self):
        super().__init__(self.MESSAGE)


class DecodeError(CoseError):
    """The bytes are not a well-formed COSE object of the expected type"""


class SignatureResult(NamedTuple):
    index: int
    error: Optional[VerificationError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class VerificationFailed(CoseError):
    """One or more signatures attached to a message did not verify"""

    def __init__(self, results: List[SignatureResult]):
        self.results = results
        failed = [r.index for r in results if not r.ok]
        super().__init__(
            f"{len(failed)} of {len(results)} signatures failed verification: {failed}"
        )

    @property
    def failed(self) -> List[SignatureResult]:
        return [r for r in self.results if not r.ok]
