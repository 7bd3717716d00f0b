"""Two-host podcast generation from a session story."""

from session_processor.podcast.assembler import PodcastAssembler
from session_processor.podcast.generator import PodcastGenerator
from session_processor.podcast.versions import PodcastVersionStore

__all__ = ["PodcastAssembler", "PodcastGenerator", "PodcastVersionStore"]
