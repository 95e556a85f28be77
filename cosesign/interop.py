# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.

from typing import Dict, Type

from cryptography.hazmat.primitives.asymmetric import ec
from pycose.keys.curves import P256, P384, P521, CoseCurve  # type: ignore
from pycose.keys.ec2 import EC2Key  # type: ignore
from pycose.keys.keyparam import EC2KpCurve, EC2KpD, EC2KpX, EC2KpY  # type: ignore
from pycose.messages import Sign1Message as PyCoseSign1Message  # type: ignore

from cosesign.sign1 import Sign1Message

_COSE_CURVES: Dict[str, Type[CoseCurve]] = {
    "secp256r1": P256,
    "secp384r1": P384,
    "secp521r1": P521,
}


def from_cryptography_eckey_obj(ext_key) -> EC2Key:
    """
    Convert a cryptography EC key, private or public, to a pycose EC2Key.
    """
    private = isinstance(ext_key, ec.EllipticCurvePrivateKey)
    public_key = ext_key.public_key() if private else ext_key
    numbers = public_key.public_numbers()
    curve = _COSE_CURVES.get(numbers.curve.name)
    if curve is None:
        raise NotImplementedError(f"unsupported curve {numbers.curve.name}")

    cose_key = {
        EC2KpCurve: curve,
        EC2KpX: numbers.x.to_bytes(curve.size, "big"),
        EC2KpY: numbers.y.to_bytes(curve.size, "big"),
    }
    if private:
        d = ext_key.private_numbers().private_value
        cose_key[EC2KpD] = d.to_bytes(curve.size, "big")
    return EC2Key.from_dict(cose_key)


def verify_with_pycose(encoded: bytes, public_key, external_aad: bytes = b"") -> bool:
    """
    Verify an encoded COSE_Sign1 with pycose, an independent implementation.
    """
    msg = PyCoseSign1Message.decode(encoded)
    msg.key = from_cryptography_eckey_obj(public_key)
    msg.external_aad = external_aad
    return msg.verify_signature()


def sign_with_pycose(
    payload: bytes, private_key, protected: dict, external_aad: bytes = b""
) -> Sign1Message:
    """
    Sign a COSE_Sign1 with pycose and decode the result with cosesign.
    """
    msg = PyCoseSign1Message(phdr=protected, payload=payload, external_aad=external_aad)
    msg.key = from_cryptography_eckey_obj(private_key)
    return Sign1Message.decode(msg.encode())
