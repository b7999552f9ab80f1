from setuptools import setup, find_packages


setup(
    name="glacierup",
    version="0.1",
    packages=find_packages(include=["glacierup", "glacierup.*"]),
    description="Multipart uploads of large archives to cold-storage vaults with SHA-256 tree hashes.",
    author="vercingetorx",
    python_requires=">=3.8",
    install_requires=[
        "boto3>=1.26",
        "botocore>=1.29",
        "tenacity>=8.0",
    ],
    entry_points={
        "console_scripts": [
            "glacierup=glacierup.cli:main",
        ]
    },
)
