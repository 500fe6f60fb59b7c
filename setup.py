from setuptools import setup, find_packages

setup(
    name="roleprobe",
    version="1.0.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.10",
    install_requires=[
        "click",
        "rich",
        "mysql-connector-python",
        "httpx",
        "python-dotenv",
        "playwright",
        "pyyaml",
    ],
    extras_require={
        "test": [
            "pytest",
        ],
    },
    entry_points={
        "console_scripts": [
            "roleprobe=roleprobe.cli.main:main",
        ],
    },
)
