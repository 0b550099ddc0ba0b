from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="sidekiq-autoscaler",
    version="0.1.0",
    description="Autoscaling for Sidekiq worker deployments on Kubernetes based on queue length",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Programming Language :: Python :: 3",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.8",
    install_requires=[
        "kubernetes>=24.2.0",
        "redis>=5.0.1",
        "PyYAML>=6.0",
        "retry>=0.9.2",
        "urllib3>=1.26",
    ],
    extras_require={
        "tests": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "sidekiq-autoscaler=sidekiq_autoscaler.main:main",
        ],
    },
)
