"""
weather — Weather alert ingestion and revision chain resolution.

Modules:
    models          — AlertMessage (feed), WeatherAlert (stored)
    nws_client      — active alerts by zone
    chain_resolver  — collapse update/cancel chains into one record
"""
