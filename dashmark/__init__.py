"""dashmark: burn wall-clock timestamps into dashcam videos."""
