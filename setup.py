from setuptools import find_packages, setup

exec(open("trellis/_version.py", encoding="utf-8").read())

with open("README.rst", encoding="utf8") as f:
    LONG_DESC = f.read()

setup(
    name="trellis",
    version=__version__,
    description="Structured concurrency for plain Python coroutines",
    long_description=LONG_DESC,
    long_description_content_type="text/x-rst",
    license="MIT OR Apache-2.0",
    packages=find_packages(include=["trellis", "trellis.*"]),
    install_requires=[
        # attrs 19.2.0 adds `eq` option to decorators
        # attrs 20.1.0 adds @frozen
        "attrs >= 20.1.0",
        "sortedcontainers",
        "outcome",
        "sniffio >= 1.3.0",
        "exceptiongroup >= 1.0.0rc9; python_version < '3.11'",
    ],
    extras_require={
        "test": ["pytest"],
    },
    python_requires=">=3.8",
    keywords=["async", "structured concurrency", "cancellation", "trellis"],
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "License :: OSI Approved :: Apache Software License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: Implementation :: CPython",
        "Programming Language :: Python :: 3 :: Only",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
