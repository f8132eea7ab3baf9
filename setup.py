from setuptools import setup, find_packages

package_name = 'rover_relay'

setup(
    name=package_name,
    version='1.0.0',
    packages=find_packages(exclude=['tests', 'tests.*']),
    python_requires='>=3.8',
    install_requires=[
        'setuptools',
        'fastapi>=0.104.0',
        'uvicorn>=0.24.0',
        'websockets>=12.0',
        'paho-mqtt>=2.0.0',
        'httpx>=0.25.0',
    ],
    extras_require={
        'test': ['pytest'],
    },
    zip_safe=True,
    description='Signaling, MJPEG proxy and MQTT bridge for a Quest-driven rover',
    license='MIT',
    entry_points={
        'console_scripts': [
            'rover_relay = rover_relay.main:main',
        ],
    },
)
