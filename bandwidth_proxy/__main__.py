from bandwidth_proxy.cluster import main

if __name__ == "__main__":
    main()
