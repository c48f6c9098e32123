from setuptools import setup, find_namespace_packages

setup(
    name="xresign",
    version="0.1.0",
    packages=find_namespace_packages(include=["xresign", "xresign.*"]),
    include_package_data=True,
    install_requires=[
        "rich",
        "python-dotenv",
        "lief",
        "toml",
        "rich-argparse",
        "asn1crypto",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "xresign=xresign.cli:main",
        ],
    },
)
