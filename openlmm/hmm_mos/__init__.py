"""HMM-based moving object segmentation for online dynamic point removal."""