from setuptools import find_packages, setup

setup(
    name="mobile-tester",
    version="0.1.0",
    packages=find_packages(
        include=[
            "mt_common",
            "mt_common.*",
            "mt_persistence",
            "mt_persistence.*",
            "mt_controller",
            "mt_controller.*",
            "mt_server",
            "mt_server.*",
            "mt_admin",
            "mt_admin.*",
        ]
    ),
    install_requires=[
        "requests>=2.31.0",
        "fastapi>=0.104.0",
        "uvicorn>=0.24.0",
        "python-multipart>=0.0.6",
        "aiosqlite>=0.19.0",
        "click>=8.1.0",
        "google-auth>=2.23.0",
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
            "mt-controller=mt_controller.__main__:main",
            "mt-admin=mt_admin.cli:cli",
        ],
    },
    python_requires=">=3.11",
)
