"""clipencode -- encode rendered frames into a finished video.

Compile a declarative timeline (background audio tracks, embedded video
clips, quality settings) into one ffmpeg invocation, stream raw frames
into it, and cache frames decoded from embedded clips.
"""
