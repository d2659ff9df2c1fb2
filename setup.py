"""Setup script for Laundry Ops."""

from setuptools import setup, find_packages

setup(
    name="laundry-ops",
    version="1.0.0",
    description="Order tracking, wallet ledger and Tap payment reconciliation for a laundry service",
    author="Laundry Ops Team",
    python_requires=">=3.10",
    packages=find_packages(include=["laundry_ops", "laundry_ops.*"]),
    install_requires=[
        line.strip()
        for line in open("requirements.txt")
        if line.strip() and not line.startswith("#") and not line.startswith("git+")
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
            "pytest-mock>=3.12.0",
            "aiosqlite>=0.19.0",
        ],
        "dev": [
            "black>=23.0.0",
            "isort>=5.12.0",
            "flake8>=6.0.0",
            "mypy>=1.4.0",
            "pytest-cov>=4.1.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "laundry-ops-api=laundry_ops.api.main:main",
            "laundry-ops-payment-sync=laundry_ops.workers.payment_sync_worker:main",
            "laundry-ops-outbox=laundry_ops.workers.outbox_worker:main",
        ]
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Framework :: FastAPI",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
