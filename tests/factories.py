"""Builders for test inputs."""

from sessionguard.models import DeviceContext, DeviceInfo

CHROME_WINDOWS_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
SAFARI_IPHONE_UA = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_1 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.1 Mobile/15E148 Safari/604.1"
)
FIREFOX_LINUX_UA = "Mozilla/5.0 (X11; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0"
EDGE_WINDOWS_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36 Edg/120.0.2210.91"
)


def device(browser: str | None, os_family: str | None, **kwargs) -> DeviceInfo:
    return DeviceInfo(browser_family=browser, os_family=os_family, **kwargs)


def device_context(
    browser: str = "Chrome",
    os_family: str = "Windows",
    ip_address: str | None = "10.0.0.1",
    screen: str | None = None,
    **kwargs,
) -> DeviceContext:
    return DeviceContext(
        device_info=device(browser, os_family, screen_resolution=screen),
        ip_address=ip_address,
        **kwargs,
    )
