from setuptools import setup, find_packages
import os

# Read the contents of README file
this_directory = os.path.abspath(os.path.dirname(__file__))
try:
    with open(os.path.join(this_directory, 'README.md'), encoding='utf-8') as f:
        long_description = f.read()
except FileNotFoundError:
    long_description = "Transcode Queue - batch transcoding with bounded workers and VMAF-based quality calibration"

setup(
    name="transcode-queue",
    version="1.0.0",
    description="Batch transcoding orchestrator with bounded workers and VMAF-based quality calibration",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["transcode_queue", "transcode_queue.*"]),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: End Users/Desktop",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Topic :: Multimedia :: Video :: Conversion",
    ],
    python_requires=">=3.8",
    install_requires=[
        "tqdm>=4.0.0",
        "psutil>=5.0.0",  # For stopping encoder processes
    ],
    extras_require={
        "dev": [
            "pytest",
            "black",
            "flake8",
        ],
    },
    entry_points={
        "console_scripts": [
            "transcode-queue=transcode_queue.cli:main",
        ],
    },
    include_package_data=True,
    zip_safe=False,
)
