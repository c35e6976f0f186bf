"""
Heart Rate Sampler — camera photoplethysmography for timed assessments.
Cover the camera lens (and its light) with a fingertip; the pipeline tracks
the colour of each frame, analyses the green channel in overlapping 10 s
windows and publishes the heart rate in BPM with a confidence value.
"""

__version__ = "0.1.0"
__author__ = "heartrate_sampler"
