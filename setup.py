from setuptools import setup, find_packages

setup(
    name="growth-experimentation-engine",
    version="1.0.0",
    packages=find_packages(include=["src", "src.*"]),
    python_requires=">=3.9",
    install_requires=[
        "pandas>=2.0.0",
        "numpy>=1.21.0",
        "scipy>=1.7.0",
        "SQLAlchemy>=2.0.0",
        "Flask>=2.2.0",
    ],
    extras_require={
        "test": ["pytest>=7.0.0"],
        "airflow": ["apache-airflow>=2.4.0"],
    },
)
