from setuptools import setup, find_packages
import site
import sys

assert sys.version_info >= (3, 8), (
    "Please use Python version 3.8 or higher, "
    "lower versions are not supported"
)

# https://github.com/pypa/pip/issues/7953#issuecomment-645133255
site.ENABLE_USER_SITE = "--user" in sys.argv[1:]


extras = {
    "dev": [
        "pytest",
        "coverage",
        "flake8",
        "flake8-print",
    ],
}
extras["all"] = sum(extras.values(), [])


setup(
    name="pcmfit",
    version="0.1.0",
    description="Crossvalidated second moment estimation and pattern "
                "component model fitting",
    license="Apache 2",
    python_requires=">=3.8",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "numpy",
        "scipy",
        "scikit-learn",
        "joblib",
    ],
    extras_require=extras,
)
