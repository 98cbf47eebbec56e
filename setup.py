from setuptools import setup, find_namespace_packages

setup(
    name="web-watchdog",                       # имя пакета
    version="1.0.0",                           # версия проекта
    description="Web Watchdog: dead man's switch for one command with web based reset / restart",
    packages=find_namespace_packages(          # пакеты без __init__.py (namespace) тоже нужны
        include=["src", "src.*", "executors", "services", "routers", "monitoring", "utils"],
    ),
    package_data={"src": ["templates/*.html"]},
    python_requires=">=3.11",                  # минимальная версия Python
    install_requires=[
        "fastapi>=0.111",
        "uvicorn>=0.30",
        "httpx>=0.28",
        "jinja2>=3.1",
        "python-dotenv>=1.0",
        "prometheus-client>=0.22",
    ],
    extras_require={
        "test": ["pytest>=8.2", "pytest-asyncio>=0.23", "asgi-lifespan>=2.1"],
        "dev": ["black", "isort", "flake8", "mypy", "pytest-cov"],
    },
    entry_points={
        "console_scripts": ["web-watchdog=src.main:run"],
    },
    classifiers=[
        "Programming Language :: Python :: 3.11",
        "License :: OSI Approved :: MIT License",
        "Operating System :: POSIX",
    ],
    include_package_data=True,  # шаблоны страниц reset / restart
    zip_safe=False,
)
