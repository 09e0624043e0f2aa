# setup.py

from setuptools import setup, find_packages

setup(
    name="metagenome_tools",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "pandas>=1.3.0",
        "numpy>=1.20.0",
        "matplotlib>=3.4.0",
        "seaborn>=0.11.0",
        "scipy>=1.7.0",
        "scikit-bio>=0.6.0",
        "statsmodels>=0.12.0",
        "scikit-learn>=1.0.0",
        "PyYAML>=5.4",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    entry_points={
        "console_scripts": [
            "metagenome_tools=metagenome_tools.cli:main",
        ],
    },
    description="Association screening, ordination and classification for metagenomic abundance tables",
    keywords="microbiome, metagenomics, differential abundance, bioinformatics",
    python_requires=">=3.8",
)
