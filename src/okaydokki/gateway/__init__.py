"""OkayDokki Gateway -- HTTP API、任务服务与进度推送"""
