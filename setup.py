from setuptools import find_packages, setup

setup(
    name="env-manager",
    version="0.1.0",
    packages=find_packages(
        include=[
            "envm_common",
            "envm_common.*",
            "envm_persistence",
            "envm_persistence.*",
            "envm_controller",
            "envm_controller.*",
            "envm_server",
            "envm_server.*",
            "envm_admin",
            "envm_admin.*",
        ]
    ),
    install_requires=[
        "fastapi>=0.104.0",
        "pydantic>=2.0",
        "uvicorn>=0.24.0",
        "click>=8.1.0",
        "PyYAML>=6.0",
        "croniter>=2.0.0",
        "GitPython>=3.1.40",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
            "pytest-xdist>=3.3.0",
            "httpx>=0.25.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "envm-server=envm_server.__main__:main",
            "envm-controller=envm_controller.__main__:main",
            "envm-admin=envm_admin.cli:cli",
        ],
    },
    python_requires=">=3.11",
)
