#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""A setuptools based setup module.
See:
https://packaging.python.org/en/latest/distributing.html
https://github.com/pypa/sampleproject
"""


# Always prefer setuptools over distutils
from setuptools import setup
# To use a consistent encoding
from codecs import open
from os import path

__version__ = "1.0.0"

description = "A Python package and CLI for fetching DMARC aggregate " \
              "report files from mailboxes, directories and S3 buckets"

here = path.abspath(path.dirname(__file__))

# Get the long description from the README file
with open(path.join(here, 'README.rst'), encoding='utf-8') as f:
    long_description = f.read()

setup(
    name='dmarcfetch',

    version=__version__,

    description=description,
    long_description=long_description,

    # Choose your license
    license='Apache 2.0',

    # See https://pypi.python.org/pypi?%3Aaction=list_classifiers
    classifiers=[
        'Development Status :: 4 - Beta',

        'Intended Audience :: Developers',
        "Intended Audience :: Information Technology",
        'Operating System :: OS Independent',

        'License :: OSI Approved :: Apache Software License',

        'Programming Language :: Python :: 3 :: Only',
        'Programming Language :: Python :: 3',
    ],

    keywords='DMARC, reporting, IMAP, fetcher',

    packages=["dmarcfetch", "dmarcfetch.mail"],

    python_requires='>=3.8',

    # List run-time dependencies here.  These will be installed by pip when
    # your project is installed.
    install_requires=['xmltodict>=0.12.0',
                      'imapclient>=2.1.0',
                      'tqdm>=4.31.1',
                      'boto3>=1.16.63',
                      ],

    extras_require={
        'test': ['pytest'],
    },

    entry_points={
        'console_scripts': ['dmarcfetch=dmarcfetch.cli:_main'],
    }
)
