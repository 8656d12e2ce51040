"""Setup script for the Marketplace Payments reconciliation engine."""

from setuptools import setup, find_packages

setup(
    name="marketplace_payments",
    version="1.0.0",
    description="Order and payment reconciliation engine for a multi-seller marketplace",
    author="ML Roadmap Bootcamp",
    python_requires=">=3.9",
    packages=find_packages(include=["marketplace_payments", "marketplace_payments.*"]),
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
            "marketplace-payments-outbox=marketplace_payments.workers.outbox_publisher:main",
            "marketplace-payments-reconcile=marketplace_payments.workers.reconciliation_worker:main",
        ]
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Financial and Insurance Industry",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
    ],
)
