"""
FocusMute — mute every application except the one in the foreground.

Launch via: pythonw.exe -m focusmute.service  (or the `focusmute` console script)
"""
