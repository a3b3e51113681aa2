"""Setup script for var-cleaner"""
from setuptools import setup
from pathlib import Path
readme_path = Path(__file__).parent / "README.md"
long_description = readme_path.read_text(encoding="utf-8") if readme_path.exists() else ""
setup(
    name="var-cleaner",
    version="1.0.0",
    author="VarCleaner Project",
    author_email="info@var-cleaner.dev",
    description="Merge duplicate .var packages spread across an addon folder",
    long_description=long_description,
    long_description_content_type="text/markdown",
    url="https://github.com/yourusername/var-cleaner",
    project_urls={
        "Bug Reports": "https://github.com/yourusername/var-cleaner/issues",
        "Source": "https://github.com/yourusername/var-cleaner",
    },
    py_modules=["var_cleaner"],
    python_requires=">=3.8",
    install_requires=[],
    extras_require={
        "progress": ["rich>=12.0.0", "tqdm>=4.60.0"],
        "dev": ["pytest>=6.0.0", "black>=22.0.0", "flake8>=4.0.0", "pytest-asyncio"],
        "full": ["rich>=12.0.0", "tqdm>=4.60.0"],
    },
    entry_points={
        "console_scripts": [
            "var-cleaner=var_cleaner:cli_main",
        ],
    },
    classifiers=[
        "Development Status :: 5 - Production/Stable",
        "Intended Audience :: End Users/Desktop",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Topic :: System :: Archiving",
        "Topic :: Utilities",
    ],
)
