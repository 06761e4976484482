"""Patient vital monitoring, alert triage and live-map focus arbitration.

The domain package holds pure models and rules; services wire them to the
monitoring API, the notification log and the geolocation provider.
"""
