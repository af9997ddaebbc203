"""VidStruct：长视频镜头/场景分组、结构分类、SMPTE 标记与广告插入点搜索。"""
