"""Build and push vLLM inference-server images with buildah or Docker."""

__version__ = "0.1.0"
