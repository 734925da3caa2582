"""Body measurement engine: keypoint frames to verified body measurements and mesh parameters"""
