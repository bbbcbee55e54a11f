from setuptools import setup, find_packages

setup(
    name="asdf-gateway",
    version="0.1.0",
    packages=find_packages(include=["asdf_gateway", "asdf_gateway.*"]),
    python_requires=">=3.11",
    install_requires=[
        "fastapi",
        "pydantic>=2",
        "pydantic-settings>=2",
        "httpx",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
            "respx",
        ],
    },
)
