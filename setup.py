# setup.py
from setuptools import setup, find_packages
from pathlib import Path
this_directory = Path(__file__).parent
long_description = (this_directory / "README.md").read_text(encoding="utf-8")

setup(
    name="mangatl",
    version="0.1.0",
    package_dir={"": "src"},
    packages=find_packages(where="src", include=["mangatl", "mangatl.*"]),
    description="Page-by-page OCR and machine translation of scanned comics and documents.",
    long_description=long_description,
    long_description_content_type='text/markdown',
    python_requires=">=3.10",

    install_requires=[
        "PyMuPDF",
        "pytesseract",
        "httpx",
        "tqdm",
        "Pillow",
        "numpy"
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
        ],
    },
    entry_points={
        'console_scripts': [
            'mangatl=mangatl.cli:main',
        ],
    },
)
