# Core modules for transcode_queue
