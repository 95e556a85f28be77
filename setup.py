# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.

from os import path
from setuptools import setup  # type: ignore

PACKAGE_NAME = "cosesign"
VERSION = "0.1.0"

path_here = path.abspath(path.dirname(__file__))

with open(path.join(path_here, "README.md"), encoding="utf-8") as f:
    long_description = f.read()

with open(path.join(path_here, "requirements.txt"), encoding="utf-8") as f:
    requirements = f.read().splitlines()

setup(
    name=PACKAGE_NAME,
    version=VERSION,
    description="COSE (RFC 8152) signing and message authentication: COSE_Sign, COSE_Sign1 and COSE_Mac0",
    long_description=long_description,
    long_description_content_type="text/markdown",
    license="Apache License 2.0",
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Programming Language :: Python :: 3",
    ],
    packages=[PACKAGE_NAME],
    python_requires=">=3.8",
    install_requires=requirements,
    extras_require={"test": ["pytest"]},
    entry_points={
        "console_scripts": [
            "cosesign_sign1 = cosesign.cli:sign_cli",
            "cosesign_sign1_prepare = cosesign.cli:prepare_cli",
            "cosesign_sign1_finish = cosesign.cli:finish_cli",
            "cosesign_verify1 = cosesign.cli:verify_cli",
        ]
    },
    include_package_data=True,
)
