"""
リモート層 - 予約APIと接続状態の抽象化
"""

from .booking_api import BookingApiClient, HttpBookingApiClient, ApiEndpoints
from .connectivity import ConnectivityMonitor, ManualConnectivity, HttpConnectivityProbe

__all__ = [
    'BookingApiClient', 'HttpBookingApiClient', 'ApiEndpoints',
    'ConnectivityMonitor', 'ManualConnectivity', 'HttpConnectivityProbe'
]
