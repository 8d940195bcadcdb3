from datetime import datetime

from torrent_stream import human, instrumentation
from torrent_stream.engine.base import SwarmEngine, SwarmSession
from torrent_stream.lifecycle import LifecycleManager
from torrent_stream.torrent import ActiveFileInfo, ActiveTorrentInfo, Stats


def active_torrent(session: SwarmSession, open_streams: int) -> ActiveTorrentInfo:
    return ActiveTorrentInfo(
        name=session.name,
        info_hash=session.info_hash,
        size=session.length,
        progress=session.progress,
        downloaded=session.downloaded,
        uploaded=session.uploaded,
        download_speed=session.download_speed,
        upload_speed=session.upload_speed,
        peers=session.num_peers,
        open_streams=open_streams,
        files=[
            ActiveFileInfo(
                name=f.name,
                path=f.path,
                size=f.length,
                progress=f.progress,
                downloaded=f.downloaded,
            )
            for f in session.files
        ],
    )


def get_stats(engine: SwarmEngine, manager: LifecycleManager, launched_at: datetime) -> Stats:
    sessions = engine.sessions()
    instrumentation.ACTIVE_TORRENTS.set(len(sessions))
    return Stats(
        uptime=human.duration((datetime.now() - launched_at).total_seconds() * 1000),
        open_streams=manager.total_open_streams(),
        download_speed=engine.download_speed,
        upload_speed=engine.upload_speed,
        active_torrents=[
            active_torrent(session, manager.open_streams(session.info_hash))
            for session in sessions
        ],
    )
