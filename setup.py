from setuptools import setup, find_packages

setup(
    name="FlashCycle",
    version="0.1",
    packages=find_packages(),
    package_data={"flashcycle": ["config/*.yaml"]},
    install_requires=[
        "networkx~=3.3",
        "numpy>=1.26.4",
        "pandas>=2.2.2",
        "PyYAML~=6.0.1",
    ],
    extras_require={
        "test": ["pytest>=8.0"],
    },
    python_requires=">=3.9",
    test_suite="flashcycle/tests",  # This points to the folder where your test cases are located
)
