from setuptools import setup, find_packages
from pathlib import Path

# Read the README file
readme_path = Path("README.md")
long_description = readme_path.read_text(encoding="utf-8")

# Read requirements file
requirements_path = Path("requirements.txt")
requirements = [
    line.strip()
    for line in requirements_path.read_text(encoding="utf-8").splitlines()
    if line.strip() and not line.startswith("#")
]

setup(
    name="snmp-poller",
    version="0.2.0",
    author="snmp-poller contributors",
    description="Run many SNMP requests concurrently on a single asyncio event loop",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["snmp_poller", "snmp_poller.*"]),
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: GNU General Public License v3 (GPLv3)",
        "Operating System :: OS Independent",
        "Framework :: AsyncIO",
        "Topic :: System :: Networking",
        "Topic :: System :: Networking :: Monitoring",
    ],
    python_requires=">=3.9",
    install_requires=requirements,
    extras_require={
        "test": ["pytest>=7.0"],
    },
    entry_points={
        'console_scripts': ['snmp-poller=snmp_poller.__main__:main']
    },
)
