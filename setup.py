from setuptools import setup, find_packages


def read_requirements():
    try:
        with open("requirements.txt", "r") as f:
            return [line.strip() for line in f if line.strip() and not line.startswith("#")]
    except FileNotFoundError:
        return ["redis>=5.0.0"]


setup(
    name="media-pipeline",
    version="0.1.0",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    py_modules=[
        "audit_recorder",
        "bucketing",
        "config",
        "continue_watching",
        "errors",
        "event_ingestion",
        "factory",
        "job_handlers",
        "job_queue",
        "models",
        "popularity_aggregator",
        "queue_broker",
        "queue_worker",
        "redis_broker",
        "redis_storage",
        "scheduler",
        "storage",
        "trending",
        "worker_main",
    ],
    install_requires=read_requirements(),
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
        ],
    },
)
