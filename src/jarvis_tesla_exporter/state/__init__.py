"""Engine state: device records, the transition policy and the metric cache.

The poller is the only writer of device records and of the cache; the
exporter only reads them.
"""
