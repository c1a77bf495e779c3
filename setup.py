from setuptools import find_packages, setup

setup(
    name="nodetuner",
    version='0.1.0',
    description='Idempotent kernel and hardware tuning of storage nodes',
    license='Apache-2.0',
    platforms='linux',
    python_requires='>=3.8',
    packages=find_packages(exclude=['tests', 'tests.*']),
    include_package_data=True,
    install_requires=[
        'psutil',
        'pyudev',
        'PyYAML',
        'requests',
    ],
    entry_points={
        'console_scripts': ['nodetuner=nodetuner.cli:main'],
    })
