import setuptools
from pathlib import Path
##############################################

def _read_version() -> str:
    about: dict = {}
    version_path = Path(__file__).parent / "sc_doublet_qc" / "_version.py"
    exec(version_path.read_text(encoding="utf-8"), about)
    return about["__version__"]

with open("README.md", "r") as fh:
    long_description = fh.read()

with open("requirements.txt", "r") as fh:
    install_requires = fh.read()

setuptools.setup(
     name='sc_doublet_qc',
     version=_read_version(),
     author="Scott Tyler",
     author_email="scottyler89@gmail.com",
     description="Simulation-based doublet and stripped-nucleus detection for multi-sample single cell RNAseq",
     long_description_content_type="text/markdown",
     long_description=long_description,
     install_requires = install_requires,
     extras_require={"test": ["pytest"]},
     url="https://github.com/scottyler89/sc_doublet_qc",
     packages=setuptools.find_packages(include=["sc_doublet_qc", "sc_doublet_qc.*"]),
     include_package_data=True,
     entry_points={
         "console_scripts": [
             "sc-doublet-qc=sc_doublet_qc.cli:main",
         ],
     },
     classifiers=[
         "Programming Language :: Python :: 3",
         "License :: OSI Approved :: GNU Affero General Public License v3",
         "Operating System :: OS Independent",
     ],
 )
