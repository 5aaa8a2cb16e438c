"""Build PeerRoom package."""
import setuptools

with open("README.md") as f:
    long_desc = f.read()

setuptools.setup(
    name="peerroom",
    version="0.1.0",
    author="PeerRoom Developers",
    description="Direct peer-to-peer data channels negotiated through an "
    "expiring rendezvous relay",
    long_description=long_desc,
    long_description_content_type="text/markdown",
    packages=setuptools.find_packages(exclude=("tests", "tests.*")),
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: Apache Software License",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.9",
    install_requires=[
        "aiortc>=1.5.0",
        "aiosqlite",
        "click<8.2",
        "msgpack>=1.0.0",
        "pydantic>=2",
        "pyee",
        "quart>=0.19.0",
        "requests>=2.27.1",
        "tomli; python_version<'3.11'",
        "tomli-w",
        "uvicorn",
        "uvloop",
    ],
    extras_require={
        "dev": [
            "pytest",
            "pytest-asyncio>=0.23.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "peerroom-relay=peerroom.relay.cli:cli",
        ],
    },
)
