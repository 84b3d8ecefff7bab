from setuptools import setup, find_packages

setup(
    name="streamer",
    version="0.1.0",
    description="Edge client streaming multi-camera frames to a remote collector over HTTP using PyAV",
    author="Edge Camera Streamer",
    packages=find_packages(exclude=["tests", "tests.*"]),
    include_package_data=True,
    install_requires=[
        "av>=12.3.0",
        "Pillow>=10.4.0",
        "PyYAML>=6.0",
        "requests>=2.31",
        "Flask>=3.0",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    python_requires=">=3.8",
    entry_points={
        "console_scripts": [
            "streamer=streamer.main:main",
        ],
    },
)
