import setuptools

with open("README.md", "r") as fh:
    long_description = fh.read()

version = {}
with open(r"agwcert/version.py") as fp:
    exec(fp.read(), version)

dependencies = [
    "acme>=2.0.0",
    "aiohttp>=3.9",
    "azure-core>=1.29",
    "azure-identity>=1.15",
    "azure-mgmt-network>=25.0",
    "azure-storage-blob>=12.19",
    "click>=8.0",
    "cryptography>=42.0",
    "josepy>=1.13",
    "pydantic>=2.0",
    "pydantic-settings>=2.0",
    "PyYAML>=6.0",
]

test_dependencies = [
    "pytest>=7.0",
    "pytest-asyncio>=0.23",
]

setuptools.setup(
    name="agwcert",
    version=version["__version__"],
    description="ACME HTTP-01 certificate renewal for Azure Application Gateway",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=setuptools.find_packages(exclude=["tests", "tests.*"]),
    install_requires=dependencies,
    extras_require={"test": test_dependencies},
    entry_points={"console_scripts": ["agwcert=agwcert.main:main"]},
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.10",
)
