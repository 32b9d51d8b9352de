from setuptools import setup, find_packages

setup(
    name="trustguard",
    version="0.1.0",
    description="Trust scoring and Sybil resistance engine for crowd-sourced emergency reporting",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    package_data={"trustguard": ["migrations/*.sql"]},
    install_requires=[
        "pydantic>=2.0",
        "asyncpg>=0.29",
        "python-json-logger>=3.1",
    ],
    extras_require={"dev": ["pytest>=7.0", "pytest-asyncio>=0.23"]},
    python_requires=">=3.10",
    license="CC0-1.0",
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Topic :: Security",
        "Topic :: Software Development :: Libraries",
        "License :: CC0 1.0 Universal (CC0 1.0) Public Domain Dedication",
        "Programming Language :: Python :: 3",
    ],
    keywords="trust reputation sybil emergency reporting abuse-resistance",
)
