import matplotlib

# Draw off-screen, before anything imports pyplot.
matplotlib.use("Agg")
