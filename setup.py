import setuptools

with open("README.md", "r") as fh:
    long_description = fh.read()

version = {}
with open("biodv/version.py") as fp:
    exec(fp.read(), version)

setuptools.setup(
    name="biodv",
    version=version['__version__'],
    author="The Biodv Authors",
    description="Tools for the taxonomy of biodiversity data projects.",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=['biodv'],
    python_requires=">=3.10",
    install_requires=[
        "appdirs",
        "configobj",
        "dominate",
        "dotmap",
        "requests",
        "simplejson",
    ],
    extras_require={
        "test": ["pytest", "pyfakefs", "requests-mock"],
    },
    entry_points = {
            'console_scripts':
             ['biodv=biodv.entry_points:_biodv_cli']
    },
    license='MIT',
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: BSD License",
        "Operating System :: OS Independent",
    ],
)
