from setuptools import setup, find_packages

package_name = 'car_gateway'

setup(
    name='car-gateway',
    version='1.0.0',
    packages=find_packages(include=[package_name, package_name + '.*']),
    install_requires=[
        'setuptools',
        'fastapi>=0.104.0',
        'uvicorn>=0.24.0',
        'websockets>=12.0',
    ],
    extras_require={
        'test': [
            'pytest>=7.0',
            'pytest-asyncio>=0.23',
            'httpx>=0.25',
        ],
    },
    python_requires='>=3.9',
    zip_safe=True,
    maintainer='Hasan Çoban',
    maintainer_email='hasancoban@std.iyte.edu.tr',
    description='WebSocket to TCP relay gateway for a remote-controlled car',
    license='MIT',
    entry_points={
        'console_scripts': [
            'car_gateway = car_gateway.main:main',
        ],
    },
)
