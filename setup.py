from setuptools import setup, find_packages

setup(
    name='kubejoin',
    version='0.1.0',
    packages=find_packages(),
    include_package_data=True,
    package_data={
        'kubejoin.modules.provision': ['templates/*.j2'],
    },
    install_requires=[
        'typer[all]',
        'rich',
        'kubernetes',
        'urllib3',
        'cryptography',
        'pydantic>=2',
        'jinja2',
        'pyyaml',
        'python-dotenv',
        'requests'
    ],
    extras_require={
        'test': [
            'pytest',
        ],
    },
    entry_points={
        'console_scripts': [
            'kubejoin=kubejoin.cli:app'
        ]
    },
    author='Your Name',
    description='Enroll worker nodes into a Kubernetes cluster: sign node credentials and provision the kubelet',
    classifiers=[
        'Programming Language :: Python :: 3',
        'Operating System :: POSIX :: Linux',
    ],
    python_requires='>=3.8',
)
