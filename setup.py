from setuptools import setup

version = '0.1'

with open("README.md", "r", encoding="utf-8") as f:
    long_descr = f.read()

setup(
    name='pyaspen',
    packages=['pyaspen'],
    version=version,
    license='Apache 2.0',
    description='Control Sierra Aspen matrix routers',
    long_description=long_descr,
    long_description_content_type='text/markdown',
    author='johnno',
    author_email='johnno@example.com',
    url='https://github.com/johnno/pyaspen',
    download_url=f'https://github.com/johnno/pyaspen/archive/{version}.tar.gz',
    keywords=['Sierra', 'Aspen', 'Matrix Router', 'Crosspoint'],
    install_requires=[],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    classifiers=[
        'Development Status :: 3 - Alpha',
        'Intended Audience :: Developers',
        'Topic :: Software Development :: Build Tools',
        'License :: OSI Approved :: Apache Software License',
        'Programming Language :: Python :: 3.10'
    ],
)
