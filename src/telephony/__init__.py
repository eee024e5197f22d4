"""Telephony audio components: the G.711 codec and the outbound frame pacer.

Twilio Media Streams carry 8 kHz mu-law, one byte per sample, in 20 ms frames.
"""
