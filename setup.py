from setuptools import setup, find_packages
import os

# Read the long description from README.md if it exists
long_description = ""
if os.path.isfile("README.md"):
    with open("README.md", "r", encoding="utf-8") as f:
        long_description = f.read()

setup(
    name='sxrefine',
    version='0.1.0',
    packages=find_packages(include=['sxrefine', 'sxrefine.*']),
    description='Geometry refinement, scaling and post-refinement for serial crystallography',
    long_description=long_description,
    long_description_content_type='text/markdown',
    license='GPLv3',
    keywords=['crystallography', 'serial crystallography', 'diffraction', 'refinement'],

    # These are the runtime dependencies for your package:
    install_requires=[
        'numpy>=1.18.0',
        'scipy>=1.4.0',
        'pandas>=1.0.0',
        'numba>=0.50.0',
        'PyYAML>=5.1',
    ],
    extras_require={
        'test': ['pytest>=6.0'],
    },
    entry_points={
        'console_scripts': ['sxrefine=sxrefine.cli:main'],
    },

    classifiers=[
        'Development Status :: 3 - Alpha',
        'Intended Audience :: Science/Research',
        'License :: OSI Approved :: GNU General Public License v3 (GPLv3)',
        'Programming Language :: Python :: 3',
        'Topic :: Scientific/Engineering :: Physics',
        'Topic :: Scientific/Engineering :: Chemistry',
    ],

    python_requires='>=3.9',
    include_package_data=True,
    zip_safe=False,
)
