from setuptools import setup, find_packages

setup(
    name="VoicePilot",
    version="1.0",
    package_dir={"": "src"},
    packages=find_packages("src"),
    install_requires=[
        "numpy",
        "sounddevice",
        "webrtcvad",
        "soundfile",
        "librosa",
        "torch",
        "transformers",
        "peft",
        "google-genai",
        "requests",
        "python-dotenv",
        "fastapi",
        "uvicorn",
        "pydantic",
        "python-multipart",
    ],
    extras_require={
        "test": [
            "pytest",
            "httpx",
        ],
    },
    entry_points={
        "console_scripts": [
            "voicepilot-server=voicepilot.server:main",
        ],
    },
    python_requires=">=3.9",
)
