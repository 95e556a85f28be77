# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.

import argparse
import base64
import json
import sys
from typing import List, Optional, Union

from cryptography.hazmat.primitives import hashes
from loguru import logger as LOG  # type: ignore

from cosesign.algorithms import lookup
from cosesign.errors import CoseError
from cosesign.headers import HEADER_LABEL_ALGORITHM, HEADER_LABEL_KEY_ID
from cosesign.keys import (
    Pem,
    cert_fingerprint,
    default_algorithm_for_key,
    load_public_key,
    signer_from_pem,
    verifier_from_pem,
)
from cosesign.sign1 import Sign1Message


def parse_header(item: str):
    """
    Parse a KEY=VALUE protected header argument. Integer keys and values are
    converted, so "3=text/plain" sets the content type.
    """
    key, sep, value = item.partition("=")
    if not sep or not key:
        raise argparse.ArgumentTypeError(f"Expected KEY=VALUE, got {item!r}")

    def convert(s):
        try:
            return int(s)
        except ValueError:
            return s

    return convert(key), convert(value)


def create_cose_sign1(
    payload: bytes,
    key_priv_pem: Pem,
    cert_pem: Pem,
    additional_protected_header: Optional[dict] = None,
    deterministic: bool = False,
) -> bytes:
    signer = signer_from_pem(key_priv_pem, deterministic=deterministic)
    msg = _sign1_for_cert(payload, cert_pem, additional_protected_header)
    msg.sign(signer)
    return msg.encode()


def create_cose_sign1_prepare(
    payload: bytes,
    cert_pem: Pem,
    additional_protected_header: Optional[dict] = None,
) -> dict:
    msg = _sign1_for_cert(payload, cert_pem, additional_protected_header)
    alg = msg.protected.algorithm
    assert alg
    tbs = msg.to_be_signed()

    if alg.hash_algorithm is None:
        # PureEdDSA signs the structure itself
        return {"alg": alg.name, "value": base64.b64encode(tbs).decode()}
    digester = hashes.Hash(alg.new_hash())
    digester.update(tbs)
    digest = digester.finalize()
    return {"alg": alg.name, "value": base64.b64encode(digest).decode()}


def create_cose_sign1_finish(
    payload: bytes,
    cert_pem: Pem,
    signature: Union[str, bytes],
    additional_protected_header: Optional[dict] = None,
) -> bytes:
    msg = _sign1_for_cert(payload, cert_pem, additional_protected_header)
    msg.attach_signature(base64.urlsafe_b64decode(signature))
    return msg.encode()


def _sign1_for_cert(
    payload: bytes, cert_pem: Pem, additional_protected_header: Optional[dict]
) -> Sign1Message:
    alg = default_algorithm_for_key(load_public_key(cert_pem))
    kid = cert_fingerprint(cert_pem)

    protected_header = {HEADER_LABEL_ALGORITHM: lookup(alg), HEADER_LABEL_KEY_ID: kid}
    protected_header.update(additional_protected_header or {})
    return Sign1Message(payload, protected=protected_header)


def validate_cose_sign1(
    pem: Pem, cose_sign1: bytes, external_aad: bytes = b""
) -> Sign1Message:
    """
    Decode a COSE_Sign1 and verify it against a PEM certificate or public
    key, returning the message. Raises a CoseError subclass on failure.
    """
    msg = Sign1Message.decode(cose_sign1)
    verifier = verifier_from_pem(pem, msg.protected.algorithm)
    msg.verify(verifier, external_aad)
    return msg


_SIGN_DESCRIPTION = """Create and sign a COSE Sign1 message

The binary COSE_Sign1 is written to standard output, log messages to standard error.
"""

_PREPARE_DESCRIPTION = """Print what an offline signer (for example an HSM) must sign for a COSE Sign1 message.

The output is a JSON object: "alg" names the algorithm and "value" holds the base64 digest
of the Sig_structure, or the Sig_structure itself for EdDSA. Pass the raw signature to
cosesign_sign1_finish with the same content, certificate and headers.
"""

_FINISH_DESCRIPTION = """Assemble a COSE Sign1 message around a signature produced offline.

The binary COSE_Sign1 is written to standard output.
"""

_VERIFY_DESCRIPTION = """Verify a COSE Sign1 message against a certificate or public key.

The payload is written to standard output when the signature is valid.
"""


def _common_parser(description):
    parser = argparse.ArgumentParser(
        description=description,
        formatter_class=argparse.RawTextHelpFormatter,
    )
    parser.add_argument(
        "--content",
        help="Path to content file, or '-' for stdin",
        type=str,
        required=True,
    )
    parser.add_argument(
        "--signing-cert",
        help="Path to signing certificate, PEM-encoded",
        type=str,
        required=True,
    )
    parser.add_argument(
        "--header",
        help="Additional protected header, as KEY=VALUE. May be repeated",
        type=parse_header,
        action="append",
        default=[],
    )
    return parser


def _sign_parser():
    parser = _common_parser(_SIGN_DESCRIPTION)
    parser.add_argument(
        "--signing-key",
        help="Path to signing key, PEM-encoded",
        type=str,
        required=True,
    )
    parser.add_argument(
        "--deterministic",
        help="Use deterministic ECDSA nonces (RFC 6979)",
        action="store_true",
    )
    return parser


def _finish_parser():
    parser = _common_parser(_FINISH_DESCRIPTION)
    parser.add_argument(
        "--signature",
        help='Path to JSON file with a "value" field containing a raw signature, base64-encoded',
        type=str,
        required=True,
    )
    return parser


def _prepare_parser():
    return _common_parser(_PREPARE_DESCRIPTION)


def _verify_parser():
    parser = argparse.ArgumentParser(
        description=_VERIFY_DESCRIPTION,
        formatter_class=argparse.RawTextHelpFormatter,
    )
    parser.add_argument(
        "--cose",
        help="Path to COSE Sign1 file, or '-' for stdin",
        type=str,
        required=True,
    )
    parser.add_argument(
        "--cert",
        help="Path to certificate or public key, PEM-encoded",
        type=str,
        required=True,
    )
    return parser


def _setup_logging():
    # stdout carries binary output
    LOG.remove()
    LOG.add(sys.stderr, format="<level>{message}</level>")


def _read_binary(path: str) -> bytes:
    with open(path, "rb") if path != "-" else sys.stdin.buffer as content_:
        return content_.read()


def _read_text(path: str) -> str:
    with open(path, "r", encoding="utf-8") as f:
        return f.read()


def sign_cli(argv: Optional[List[str]] = None):
    _setup_logging()
    args = _sign_parser().parse_args(argv)

    content = _read_binary(args.content)
    signing_key = _read_text(args.signing_key)
    signing_cert = _read_text(args.signing_cert)

    cose_sign1 = create_cose_sign1(
        content, signing_key, signing_cert, dict(args.header), args.deterministic
    )
    sys.stdout.buffer.write(cose_sign1)


def prepare_cli(argv: Optional[List[str]] = None):
    _setup_logging()
    args = _prepare_parser().parse_args(argv)

    content = _read_binary(args.content)
    signing_cert = _read_text(args.signing_cert)

    digest = create_cose_sign1_prepare(content, signing_cert, dict(args.header))
    json.dump(digest, sys.stdout)


def finish_cli(argv: Optional[List[str]] = None):
    _setup_logging()
    args = _finish_parser().parse_args(argv)

    content = _read_binary(args.content)
    signing_cert = _read_text(args.signing_cert)

    with open(args.signature, "r", encoding="utf-8") as signature_:
        signature = json.load(signature_)["value"]

    cose_sign1 = create_cose_sign1_finish(
        content, signing_cert, signature, dict(args.header)
    )
    sys.stdout.buffer.write(cose_sign1)


def verify_cli(argv: Optional[List[str]] = None):
    _setup_logging()
    args = _verify_parser().parse_args(argv)

    cert = _read_text(args.cert)
    try:
        msg = validate_cose_sign1(cert, _read_binary(args.cose))
    except CoseError as e:
        LOG.error(f"Verification failed: {e}")
        sys.exit(1)
    LOG.success(f"Verified COSE Sign1 signed with {msg.protected.algorithm}")
    sys.stdout.buffer.write(msg.payload or b"")
