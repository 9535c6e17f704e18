from setuptools import setup, find_packages
from pathlib import Path

readme_path = Path(__file__).parent / "README.md"
if readme_path.exists():
    long_description = readme_path.read_text(encoding="utf-8")
else:
    long_description = "Adaptive on-device/cloud inference routing with retrieval-augmented generation."

setup(
    name="edge_inference",
    version="0.1.0",
    description="Adaptive on-device/cloud inference routing with retrieval-augmented generation",
    long_description=long_description,
    long_description_content_type="text/markdown",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.10",
    install_requires=[
        "numpy>=1.24",
        "pydantic>=2.0.0",
        "pyyaml>=6.0",
        "jinja2>=3.0",  # Context templates for augmented prompts
        "fsspec>=2023.1.0",  # Settings and ingestion sources from any URI
        "typer>=0.9.0",
    ],
    entry_points={
        "console_scripts": [
            "edgeinf=edge_inference.cli:main",
        ],
    },
    extras_require={
        "dev": [
            "pytest",
            "coverage",
            "hypothesis",
            "openai>=1.13.3",  # Cloud adapter tests (mocked but module must be importable)
        ],
        "llm-local": ["llama-cpp-python>=0.3.0"],
        "openai": ["openai>=1.13.3"],
        "model2vec": ["model2vec>=0.3.0"],
        "storage-s3": ["s3fs"],
        "storage-gcs": ["gcsfs"],
        "all": [
            "llama-cpp-python>=0.3.0",
            "openai>=1.13.3",
            "model2vec>=0.3.0",
            "s3fs",
            "gcsfs",
        ],
    },
)
