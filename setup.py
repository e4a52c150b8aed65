from setuptools import setup

description = 'Messaging backbone of a browser crypto-signing wallet'

setup(
    name='walletrpc',
    version='0.1.0',
    description=description,
    long_description=description,
    author='Wallet RPC team',
    python_requires='>=3.9',
    packages=['walletrpc', 'walletrpc.service', 'walletrpc.tools'],
    install_requires=[
        'cbor2>=5,<6',
        'click>=8,<9',
        'orjson>=3,<4',
        'pyzmq>=22',
        'structlog>=22.2',
        'uvloop>=0.18',
        'PyYAML>=5',
    ],
    extras_require={
        'test': [
            'pytest>=7',
            'pytest-asyncio>=0.21',
            'pytest-mock>=3',
        ],
    },
    entry_points={
        'console_scripts': ['walletrpc=walletrpc.cli:cli'],
    },
    classifiers=[
        'Development Status :: 3 - Alpha',
        'Natural Language :: English',
        'Operating System :: POSIX :: Linux',
        'Programming Language :: Python :: 3.9',
    ],
    package_data={
        'walletrpc': ['py.typed'],
    },
)
