class TorrentStreamError(Exception):
    pass


class InvalidTorrentError(TorrentStreamError):
    """The torrent metadata could not be decoded"""
