from setuptools import setup

setup(
    name="ddmfit",
    version="0.1.0",
    description=(
        "Simulation and multi-start parameter recovery for the drift diffusion "
        "model with trial-to-trial variability"
    ),
    python_requires=">=3.10",
    packages=[
        "ddmfit",
        "ddmfit.basic_simulators",
        "ddmfit.config",
        "ddmfit.fitting",
        "ddmfit.support_utils",
    ],
    install_requires=[
        "numpy",
        "pandas",
        "scipy>=1.7",
        "pathos",
        "psutil",
    ],
    extras_require={
        "test": ["pytest"],
    },
)
