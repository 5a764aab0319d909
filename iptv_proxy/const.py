USER_AGENTS = {
    "vlc": "VLC/3.0.20 LibVLC/3.0.20",
    "chrome": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/136.0.0.0 Safari/537.36",
    "firefox": "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:128.0) Gecko/20100101 Firefox/128.0",
    "safari": "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_5) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.5 Safari/605.1.15",
    "android": "Mozilla/5.0 (Linux; Android 14; Pixel 8) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/136.0.0.0 Mobile Safari/537.36",
    "iphone": "Mozilla/5.0 (iPhone; CPU iPhone OS 17_5 like Mac OS X) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.5 Mobile/15E148 Safari/604.1",
    "smarttv": "Mozilla/5.0 (SMART-TV; Linux; Tizen 6.0) AppleWebKit/537.36 (KHTML, like Gecko) SamsungBrowser/4.0 Chrome/76.0.3809.146 TV Safari/537.36",
    "kodi": "Kodi/21.0 (X11; Linux x86_64) App_Bitness/64 Version/21.0",
    "ffmpeg": "Lavf/60.16.100",
}

REDIRECT_STATUS_CODES = (301, 302, 303, 307, 308)

HLS_CONTENT_TYPE = "application/vnd.apple.mpegurl"

# Propagated proxy parameters, in the order they are written into rewritten URLs.
PROPAGATED_PARAMS = (
    "ua",
    "referer",
    "origin",
    "cap_kbps",
    "force_lowest",
    "avoid_codecs",
    "prefer_codecs",
)

FORWARDED_REQUEST_HEADERS = [
    "range",
    "icy-metadata",
]

STRIPPED_PLAYLIST_HEADERS = [
    "content-encoding",
    "transfer-encoding",
    "content-length",
    "content-type",
    "connection",
    "keep-alive",
]

STRIPPED_STREAM_HEADERS = [
    "content-encoding",
    "connection",
    "keep-alive",
]
