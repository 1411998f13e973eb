from setuptools import setup, find_packages

setup(
    name="markhub_pipeline",
    version="0.1.0",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    install_requires=[
        "httpx>=0.25.0",
        "beautifulsoup4>=4.12.0",
        "openai>=1.3.0",
        "python-dotenv>=1.0.0",
        "aiofiles>=23.2.0",
        "pydantic>=2.0.0",
        "fastapi>=0.100.0",
        "uvicorn>=0.23.0",
        "redis>=5.0.1",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
        ],
    },
    author="MarkHub",
    author_email="dev@markhub.app",
    description="Асинхронный конвейер AI-классификации закладок MarkHub",
    long_description=open("README.md", encoding="utf-8").read(),
    long_description_content_type="text/markdown",
    url="https://github.com/markhub-app/markhub_pipeline",
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.10",
    entry_points={
        "console_scripts": [
            "markhub_pipeline=markhub_pipeline.main:main",
        ],
    },
)
