"""Install the multi-account session client package."""

from setuptools import setup, find_packages

setup(
    name='accounts-client',
    version='0.1.0',
    packages=find_packages(exclude=['*tests*']),
    install_requires=[
        "pydantic>=2",
        "aiohttp",
        "pyjwt",
        "python-json-logger",
        "pytz",
    ],
    extras_require={
        'test': [
            "pytest",
            "pytest-asyncio",
            "hypothesis",
            "mimesis",
        ],
    },
    zip_safe=False
)
