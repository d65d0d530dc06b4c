"""
Setup configuration for analysis-scheduler package.
"""

from setuptools import setup, find_packages
from pathlib import Path

# Read the README file
this_directory = Path(__file__).parent
long_description = (this_directory / "README.md").read_text() if (this_directory / "README.md").exists() else ""

setup(
    name="analysis-scheduler",
    version="0.1.0",
    description="Dispatch recurring scheduled analyses to the analysis pipeline",
    long_description=long_description,
    long_description_content_type="text/markdown",

    # Package discovery
    packages=find_packages(include=["analysis_scheduler", "analysis_scheduler.*"]),

    # Dependencies
    install_requires=[
        "APScheduler>=3.10.0,<4.0",
        "SQLAlchemy>=2.0.0",
        "psycopg2-binary>=2.9.0",
        "requests>=2.31.0",
        "kombu>=5.3.0",
        "python-dotenv>=1.0.0",
    ],

    # Optional dependencies
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "black>=23.0.0",
            "flake8>=6.0.0",
        ],
    },

    # Python version requirement
    python_requires=">=3.9",

    # CLI entry points
    entry_points={
        "console_scripts": [
            "analysis-scheduler=analysis_scheduler.cli:main",
        ],
    },

    # Classification
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Topic :: System :: Distributed Computing",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],

    # Keywords
    keywords="scheduler cron rabbitmq analysis dispatch",

    include_package_data=True,
)
