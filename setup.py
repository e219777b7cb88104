#!/usr/bin/env python

import os
import re
from setuptools import setup

version_file = os.path.join('multipart_stream', '__init__.py')
with open(version_file, 'rb') as f:
    version_data = f.read().strip().decode('ascii')

version_re = re.compile(r'((?:\d+)\.(?:\d+)\.(?:\d+))')
version = version_re.search(version_data).group(0)

install_requires = [
    'multidict>=6.0',
]

tests_require = [
    'pytest',
    'pytest-cov',
    'pytest-timeout',
    'PyYAML',
    'invoke',
]

setup(name='multipart-stream',
      version=version,
      description='A streaming, pull-based multipart decoder for asyncio',
      license='Apache',
      platforms='any',
      zip_safe=False,
      install_requires=install_requires,
      extras_require={
          'test': tests_require,
          'fuzz': ['atheris'],
      },
      packages=[
          'multipart_stream',
      ],
      python_requires='>=3.9',
      classifiers=[
        'Development Status :: 4 - Beta',
        'Environment :: Web Environment',
        'Framework :: AsyncIO',
        'Intended Audience :: Developers',
        'License :: OSI Approved :: Apache Software License',
        'Operating System :: OS Independent',
        'Programming Language :: Python :: 3 :: Only',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.9',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Topic :: Software Development :: Libraries :: Python Modules'
      ],
     )
