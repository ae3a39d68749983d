# tunecast/__init__.py
from .downloader import YTDLProvider
from .file_cache import FileCache
from .kv_cache import KeyValueCache, cache_key
from .player import GuildMusicPlayer, MusicService, PlayerStatus
from .segments import SegmentSkipper
from .track import QueuedTrack, SourceKind, TrackMetadata
from .transcoder import Transcoder
from .views import MusicControls, build_player_embed
