from setuptools import setup, find_packages

with open('requirements.txt') as f:
    requirements = f.readlines()

with open('test-requirements.txt') as f:
    test_requirements = f.readlines()

setup(name='edge-build-service',
      description='Build orchestration and OSTree repository assembly for RHEL for Edge images',
      version='1.0.0',
      classifiers=[
          "Programming Language :: Python",
          "Programming Language :: Python :: 3",
          "Topic :: Software Development :: Build Tools"
      ],
      keywords='rhel edge ostree image builder static delta',
      author='FIXME',
      author_email='FIXME',
      license='MIT',
      packages=find_packages(exclude=['tests', 'tests.*']),
      package_data={'edge_build_service': ['templates/*.ks']},
      include_package_data=True,
      zip_safe=False,
      python_requires='>=3.7',
      install_requires=requirements,
      tests_require=test_requirements,
      extras_require={'test': test_requirements},
      entry_points={
          'console_scripts': ['edge_build_service_manage = edge_build_service.manage:main']
      },
      data_files=[('etc/edge-build-service', ['conf/config.py'])],
      )
