"""On-device profiling daemon: periodic CPU, network and memory sampling."""
