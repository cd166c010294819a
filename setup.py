"""Package configuration."""

from setuptools import find_namespace_packages, setup

# The below list is only for CI
# For prod install the libs on the cookbook runner hosts along with spicerack
install_requires = [
    'prettytable',
    'python-dateutil',
    'PyYAML',
    'requests',
    'wikimedia-spicerack',
]

# Extra dependencies
extras_require = {
    # Test dependencies
    'tests': [
        'bandit>=1.5.0',
        'flake8>=3.2.1',
        'mypy>=0.670',
        'pytest>=6.1.0',
        'types-python-dateutil',
        'types-PyYAML',
        'types-requests',
        'types-setuptools',
    ],
    'prospector': [
        'prospector[with_everything]>=0.12.4,<1.12.0',
        'pytest>=6.1.0',
    ],
}

setup_requires = [
    'setuptools_scm>=1.15.0',
]

setup(
    author='Cluster Operations',
    author_email='clusterops@example.org',
    description='Automation and orchestration cookbooks for distributed database clusters',
    extras_require=extras_require,
    install_requires=install_requires,
    keywords=['automation', 'orchestration', 'cookbooks', 'rolling-restart'],
    license='GPLv3+',
    name='clusterops-cookbooks',
    packages=find_namespace_packages(include=['clusterops', 'clusterops.*'], exclude=['*.tests', '*.tests.*']),
    platforms=['GNU/Linux'],
    setup_requires=setup_requires,
    use_scm_version={'fallback_version': '0.1.0'},
    zip_safe=False,
)
